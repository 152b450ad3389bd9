"""SQLAlchemy database models for the order fulfillment system."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus:
    """Payment status values shared by orders and payment records."""

    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OrderStatus:
    """Order lifecycle states, listed in transition order."""

    CREATED = "created"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"

    ORDERED = (CREATED, PAID, PROCESSING, SHIPPED, DELIVERED)

    @classmethod
    def before(cls, status: str) -> List[str]:
        """Statuses an order may move forward from to reach ``status``."""
        return list(cls.ORDERED[: cls.ORDERED.index(status)])


class ShipmentStatus:
    """Shipment states. ``booking`` marks a claim whose carrier call is in flight."""

    BOOKING = "booking"
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Address(Base):
    """Billing or shipping address referenced by orders."""

    __tablename__ = "addresses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False, default="HU")
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)


class Variant(Base):
    """Sellable product variant with its stock level."""

    __tablename__ = "variants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    sku: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("stock >= 0", name="non_negative_stock"),)


class Order(Base):
    """
    Orders table.

    The authoritative record of an order's payment, invoice and shipment
    progress. ``invoice_number`` is written once through a conditional update
    and never overwritten; the ``invoice_claim_*`` columns hold the claim of
    the invocation currently talking to the invoicing provider, and
    ``invoice_requested_at`` marks that it has asked for a document. A claim
    with that mark is never taken over.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_gross: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="HUF")
    shipping_fee_gross: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    shipping_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.UNPAID, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.CREATED, index=True
    )
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    invoice_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    billing_address_id: Mapped[str | None] = mapped_column(
        ForeignKey("addresses.id"), nullable=True
    )
    shipping_address_id: Mapped[str | None] = mapped_column(
        ForeignKey("addresses.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    billing_address: Mapped[Address | None] = relationship(
        foreign_keys=[billing_address_id], lazy="raise"
    )
    shipping_address: Mapped[Address | None] = relationship(
        foreign_keys=[shipping_address_id], lazy="raise"
    )
    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", order_by="OrderItem.position", lazy="raise"
    )

    __table_args__ = (
        CheckConstraint("total_gross >= 0", name="non_negative_total"),
        CheckConstraint("shipping_fee_gross >= 0", name="non_negative_shipping_fee"),
        CheckConstraint(
            "payment_status IN ('unpaid', 'pending', 'paid', 'failed')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "status IN ('created', 'paid', 'processing', 'shipped', 'delivered')",
            name="valid_order_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, status={self.status}, "
            f"payment_status={self.payment_status}, invoice={self.invoice_number})>"
        )


class OrderItem(Base):
    """Line item of an order."""

    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    variant_id: Mapped[str | None] = mapped_column(ForeignKey("variants.id"), nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(120), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_gross: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vat_rate: Mapped[str | None] = mapped_column(String(10), nullable=True)
    weight_g: Mapped[int | None] = mapped_column(Integer, nullable=True)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price_gross >= 0", name="non_negative_unit_price"),
    )


class Payment(Base):
    """
    Payment records table.

    One row per successful gateway initiation. Created as ``pending`` by the
    payment initiator and mutated only by the confirmation handler.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING, index=True
    )
    provider_reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    raw_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint("status IN ('pending', 'paid', 'failed')", name="valid_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payments_order_status", "order_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Shipment(Base):
    """
    Shipments table.

    ``order_id`` is unique: the row is inserted as a ``booking`` claim before
    the carrier is called, so a second booking for the same order cannot start.
    ``carrier_requested_at`` is set just before the carrier call; a booking
    row carrying it is never taken over, since the parcel may exist.
    """

    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, unique=True)
    carrier: Mapped[str] = mapped_column(String(40), nullable=False)
    tracking_number: Mapped[str | None] = mapped_column(String(120), nullable=True, unique=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ShipmentStatus.BOOKING
    )
    label_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_placeholder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    carrier_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pickup_point_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('booking', 'pending', 'in_transit', 'delivered')",
            name="valid_shipment_status",
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON responses."""
        return {
            "id": self.id,
            "orderId": self.order_id,
            "carrier": self.carrier,
            "trackingNumber": self.tracking_number,
            "status": self.status,
            "labelUrl": self.label_url,
            "isPlaceholder": self.is_placeholder,
            "pickupPointId": self.pickup_point_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        """String representation of Shipment."""
        return (
            f"<Shipment(id={self.id}, order_id={self.order_id}, "
            f"tracking={self.tracking_number}, status={self.status})>"
        )


class WebhookEvent(Base):
    """
    Gateway callback audit and deduplication table.

    A callback whose event id is already marked processed is acknowledged
    without being applied again.
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        """String representation of WebhookEvent."""
        return f"<WebhookEvent(event_id={self.event_id}, processed={self.processed})>"
