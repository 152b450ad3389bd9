"""
Pydantic schemas for API request/response models.

Field names are snake_case in Python and camelCase on the wire.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from fulfillment.core.payment_initiator import PaymentItem, PaymentRequest


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentItemSchema(CamelModel):
    """One line item of a payment request."""

    name: str = Field(..., min_length=1, description="Item name shown at checkout")
    description: str = Field(default="", description="Item description")
    quantity: int = Field(..., ge=1, description="Quantity (at least 1)")
    unit: str = Field(default="db", description="Unit of measure")
    unit_price: Decimal = Field(..., ge=0, description="Gross unit price")
    item_total: Decimal = Field(..., ge=0, description="Gross line total")
    sku: str = Field(default="", description="Stock keeping unit")


class CreatePaymentRequest(CamelModel):
    """Request schema for starting a payment."""

    order_id: str = Field(..., min_length=1, description="Order identifier")
    amount: Decimal = Field(..., ge=0, description="Amount to charge")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., HUF)")
    payer_email: str = Field(..., description="Payer email address")
    items: List[PaymentItemSchema] = Field(default_factory=list, description="Line items")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()

    def to_domain(self) -> PaymentRequest:
        return PaymentRequest(
            order_id=self.order_id,
            amount=self.amount,
            currency=self.currency,
            payer_email=self.payer_email,
            items=[
                PaymentItem(
                    name=item.name,
                    description=item.description,
                    quantity=item.quantity,
                    unit=item.unit,
                    unit_price=item.unit_price,
                    item_total=item.item_total,
                    sku=item.sku,
                )
                for item in self.items
            ],
        )

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "orderId": "O1",
                    "amount": 5000,
                    "currency": "HUF",
                    "payerEmail": "a@b.hu",
                    "items": [
                        {
                            "name": "Ceramic mug",
                            "quantity": 2,
                            "unitPrice": 2500,
                            "itemTotal": 5000,
                            "sku": "MUG-01",
                        }
                    ],
                }
            ]
        },
    )


class CreatePaymentResponse(CamelModel):
    """Response schema for payment initiation."""

    success: bool = True
    payment_id: str = Field(..., description="Gateway payment id")
    gateway_url: str = Field(..., description="Hosted checkout URL")
    redirect_url: str = Field(..., description="URL to send the payer to")


class OrderStepRequest(CamelModel):
    """Request schema for steps addressed by order id."""

    order_id: str = Field(..., min_length=1, description="Order identifier")


class CreateShipmentRequest(OrderStepRequest):
    """Request schema for shipment creation."""

    carrier: str = Field(default="dpd", description="Carrier code: dpd or packeta")
    pickup_point_id: Optional[str] = Field(
        default=None, description="Packeta pickup point the parcel goes to"
    )

    @field_validator("carrier")
    @classmethod
    def normalize_carrier(cls, v: str) -> str:
        return v.strip().lower()


class InvoiceResponse(CamelModel):
    """Response schema for invoice generation."""

    success: bool = True
    invoice_number: str = Field(..., description="Invoice number issued by the provider")
    invoice_id: Optional[str] = Field(default=None, description="Provider document id")
    download_url: Optional[str] = Field(default=None, description="PDF download URL")
    already_existed: bool = Field(default=False, description="Invoice was created earlier")
    message: Optional[str] = None


class ShipmentResponse(CamelModel):
    """Response schema for shipment creation."""

    success: bool = True
    shipment: Dict[str, Any]
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    already_existed: bool = False
    note: Optional[str] = Field(default=None, description="Set when a placeholder was used")


class TrackingResponse(CamelModel):
    success: bool = True
    shipment: Dict[str, Any]
    tracking_url: str


class PickupPointsResponse(CamelModel):
    success: bool = True
    pickup_points: List[Dict[str, Any]] = Field(default_factory=list)


class WebhookResponse(CamelModel):
    """Response schema for gateway callbacks."""

    success: bool = True
    message: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None
    paid: Optional[bool] = None


class ErrorResponse(BaseModel):
    """Body of every failed request."""

    success: bool = False
    error: str
    details: List[Dict[str, Any]] = Field(default_factory=list)
    traceId: Optional[str] = None
