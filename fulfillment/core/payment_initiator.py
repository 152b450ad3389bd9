"""
Payment initiation.

Opens a hosted checkout session with the payment gateway for an order and
records a pending payment. The order itself is not touched here; it only
changes when the gateway's callback is confirmed.
"""
import re
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.config import Settings, get_settings
from fulfillment.core.errors import ValidationFailedError
from fulfillment.core.rate_limiter import RateLimiter
from fulfillment.database.store import OrderStateStore
from fulfillment.integrations.auth import CallerIdentity
from fulfillment.integrations.barion_client import BarionClient
from fulfillment.integrations.errors import ProviderError
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

INITIATE_PAYMENT = "initiate-payment"

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


@dataclass
class PaymentItem:
    """Line item as shown on the hosted checkout page."""

    name: str
    quantity: int
    unit_price: Decimal
    item_total: Decimal
    description: str = ""
    unit: str = "db"
    sku: str = ""

    def to_barion(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "Description": self.description or self.name,
            "Quantity": self.quantity,
            "Unit": self.unit,
            "UnitPrice": float(self.unit_price),
            "ItemTotal": float(self.item_total),
            "SKU": self.sku,
        }


@dataclass
class PaymentRequest:
    order_id: str
    amount: Decimal
    currency: str
    payer_email: str
    items: List[PaymentItem] = field(default_factory=list)


@dataclass
class PaymentInitiation:
    payment_id: str
    gateway_url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "paymentId": self.payment_id,
            "gatewayUrl": self.gateway_url,
            "redirectUrl": self.gateway_url,
        }


def validate_payment_request(request: PaymentRequest) -> None:
    """
    Reject malformed payment input before anything leaves the process.

    Raises:
        ValidationFailedError: With one entry per problem found
    """
    problems: List[Dict[str, Any]] = []

    if not request.order_id or not request.order_id.strip():
        problems.append({"field": "orderId", "message": "must not be empty"})
    if request.amount < 0:
        problems.append({"field": "amount", "message": "must not be negative"})
    if not _CURRENCY_RE.match(request.currency or ""):
        problems.append({"field": "currency", "message": "must be a 3-letter code"})
    if not request.payer_email or "@" not in request.payer_email:
        problems.append({"field": "payerEmail", "message": "must be an email address"})

    for index, item in enumerate(request.items):
        if item.quantity < 1:
            problems.append({"field": f"items[{index}].quantity", "message": "must be at least 1"})
        if item.unit_price < 0 or item.item_total < 0:
            problems.append({"field": f"items[{index}]", "message": "prices must not be negative"})

    if problems:
        raise ValidationFailedError("Invalid payment request", details=problems)


class PaymentInitiator:
    """Starts gateway payments for orders."""

    def __init__(
        self,
        store: OrderStateStore,
        rate_limiter: RateLimiter,
        barion: BarionClient,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.barion = barion
        self.settings = settings or get_settings()

    async def initiate(self, request: PaymentRequest, caller: CallerIdentity) -> PaymentInitiation:
        """
        Start a payment for an order.

        Steps:
        1. Validate input and enforce the caller's rate limit
        2. Call Payment/Start, keyed by the order id
        3. Record a pending Payment with the gateway's payment id

        Args:
            request: Order id, amount, currency, payer email and items
            caller: Authenticated caller

        Returns:
            PaymentInitiation: Gateway payment id and checkout URL

        Raises:
            ValidationFailedError: Malformed input
            RateLimitExceededError: Caller over budget
            ProviderError: Gateway rejected the request (no payment recorded)
        """
        start = time.perf_counter()
        validate_payment_request(request)

        await self.rate_limiter.enforce(
            caller.user_id,
            INITIATE_PAYMENT,
            self.settings.payment_rate_limit,
            self.settings.payment_rate_window_seconds,
        )

        log = logger.bind(order_id=request.order_id, user_id=caller.user_id)
        log.info("payment_initiation_started", amount=str(request.amount), currency=request.currency)

        try:
            started = await self.barion.start_payment(
                payment_request_id=request.order_id,
                pos_transaction_id=f"{request.order_id}-1",
                amount=request.amount,
                currency=request.currency,
                payer_email=request.payer_email,
                items=[item.to_barion() for item in request.items],
                redirect_url=(
                    f"{self.settings.barion_redirect_base_url.rstrip('/')}"
                    f"/rendeles/{request.order_id}/megerosites"
                ),
                callback_url=f"{self.settings.public_base_url.rstrip('/')}/webhooks/barion",
            )
        except ProviderError:
            metrics.record_step("initiate_payment", "error", time.perf_counter() - start)
            raise

        try:
            await self.store.insert_payment(
                order_id=request.order_id,
                provider="barion",
                amount=request.amount,
                currency=request.currency,
                provider_reference=started.payment_id,
                raw_response=started.raw,
            )
            log.info("payment_record_created", payment_id=started.payment_id)
        except SQLAlchemyError as e:
            # The gateway session exists; the payer can still complete it.
            log.error(
                "payment_record_persist_failed",
                payment_id=started.payment_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_orphaned_effect("payment")

        metrics.record_step("initiate_payment", "success", time.perf_counter() - start)
        return PaymentInitiation(payment_id=started.payment_id, gateway_url=started.gateway_url)
