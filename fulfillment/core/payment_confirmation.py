"""
Payment confirmation (gateway callback) handling.

The callback body is only a hint: the handler asks the gateway for the
payment's state and acts on that answer. Each (payment, state) pair is
recorded as a webhook event so redelivered callbacks are recognised.
"""
import time
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.config import Settings, get_settings
from fulfillment.core.errors import PaymentNotFoundError, ValidationFailedError
from fulfillment.core.rate_limiter import RateLimiter
from fulfillment.database.models import PaymentStatus
from fulfillment.database.store import OrderStateStore
from fulfillment.integrations.barion_client import BarionClient
from fulfillment.integrations.errors import ProviderError
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CONFIRM_PAYMENT = "barion-webhook"
PROVIDER = "barion"


def webhook_event_id(payment_id: str, gateway_status: Optional[str]) -> str:
    return f"barion-{payment_id}-{gateway_status or 'Unknown'}"


class PaymentConfirmationHandler:
    """Applies verified gateway payment states to payments and orders."""

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

    async def handle(self, payload: Dict[str, Any], client_ip: str) -> Dict[str, Any]:
        """
        Process one gateway callback.

        Args:
            payload: Callback body; only ``PaymentId`` is read from it
            client_ip: Caller address, used as the rate limit key

        Returns:
            Dict[str, Any]: Response body

        Raises:
            RateLimitExceededError: Too many callbacks from this address
            ValidationFailedError: ``PaymentId`` missing
            ProviderError: Gateway state lookup failed
            PaymentNotFoundError: No payment was started with this id
        """
        start = time.perf_counter()

        await self.rate_limiter.enforce(
            f"webhook-{client_ip}",
            CONFIRM_PAYMENT,
            self.settings.webhook_rate_limit,
            self.settings.webhook_rate_window_seconds,
        )

        payment_id = payload.get("PaymentId") if isinstance(payload, dict) else None
        if not payment_id:
            logger.error("webhook_missing_payment_id")
            raise ValidationFailedError("Missing PaymentId")

        log = logger.bind(payment_id=payment_id)
        log.info("webhook_received")

        try:
            state = await self.barion.get_payment_state(payment_id)
        except ProviderError:
            log.error("payment_state_lookup_failed")
            metrics.record_webhook_event(PROVIDER, "failed")
            raise

        event_id = webhook_event_id(payment_id, state.status)
        event, created = await self.store.record_webhook_event(
            event_id=event_id,
            provider=PROVIDER,
            event_type="payment_status_change",
            payload=payload,
        )

        if not created:
            if event.processed:
                log.warning("webhook_duplicate_already_processed", event_id=event_id)
                metrics.record_webhook_event(PROVIDER, "duplicate")
                return {"success": True, "message": "Already processed"}
            log.info("webhook_retry_reprocessing", event_id=event_id)

        payment = await self.store.get_payment_by_reference(payment_id)
        if payment is None:
            log.error("webhook_payment_not_found")
            await self.store.mark_webhook_event(
                event_id, error_message="Payment not found in database"
            )
            metrics.record_webhook_event(PROVIDER, "failed")
            raise PaymentNotFoundError("Payment not found")

        payment_status = state.payment_status
        log = log.bind(order_id=payment.order_id)

        try:
            became_paid, shortfalls = await self.store.apply_payment_outcome(
                payment, payment_status, state.raw
            )
        except SQLAlchemyError as e:
            log.error("payment_outcome_persist_failed", error=str(e))
            await self.store.mark_webhook_event(event_id, error_message=str(e))
            metrics.record_webhook_event(PROVIDER, "failed")
            raise

        if shortfalls:
            log.warning("inventory_shortfall", variant_ids=shortfalls)

        await self.store.mark_webhook_event(event_id, processed=True)
        metrics.record_webhook_event(PROVIDER, "applied")
        metrics.record_step("confirm_payment", "success", time.perf_counter() - start)

        log.info(
            "payment_state_applied",
            gateway_status=state.status,
            payment_status=payment_status,
            became_paid=became_paid,
        )

        return {
            "success": True,
            "paymentId": payment_id,
            "orderId": payment.order_id,
            "status": payment_status,
            "paid": payment_status == PaymentStatus.PAID,
        }
