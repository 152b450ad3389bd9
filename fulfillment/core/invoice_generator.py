"""
Invoice generation for paid orders.

Exactly one invocation per order talks to the invoicing provider. It takes
the order's invoice claim with a conditional update, creates the partner and
the document, then stores the invoice number with a compare-and-set. Any
concurrent invocation waits for that number instead of creating a second
invoice. The claim is marked before the document request; from then on it
is never taken over, so a number that could not be stored is repaired by
reconciliation rather than by a second document.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.config import Settings, get_settings
from fulfillment.core.errors import OperationInProgressError, OrderNotPaidError
from fulfillment.core.rate_limiter import RateLimiter
from fulfillment.database.models import Order, PaymentStatus
from fulfillment.database.store import OrderStateStore, utcnow
from fulfillment.integrations.auth import CallerIdentity
from fulfillment.integrations.billingo_client import BillingoClient
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GENERATE_INVOICE = "generate-invoice"
SHIPPING_LINE_NAME = "Szállítási költség"


@dataclass
class InvoiceResult:
    invoice_number: str
    invoice_id: Optional[str] = None
    download_url: Optional[str] = None
    already_existed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "invoiceNumber": self.invoice_number,
            "invoiceId": self.invoice_id,
            "downloadUrl": self.download_url,
            "alreadyExisted": self.already_existed,
        }
        if self.already_existed:
            body["message"] = "Invoice already exists"
        return body


class InvoiceGenerator:
    """Creates at most one provider invoice per paid order."""

    def __init__(
        self,
        store: OrderStateStore,
        rate_limiter: RateLimiter,
        billingo: BillingoClient,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.billingo = billingo
        self.settings = settings or get_settings()

    def _existing(self, order: Order) -> InvoiceResult:
        return InvoiceResult(
            invoice_number=order.invoice_number or "",
            invoice_id=order.invoice_id,
            download_url=self.billingo.download_url(order.invoice_id) if order.invoice_id else None,
            already_existed=True,
        )

    def build_partner(self, order: Order) -> Dict[str, Any]:
        address = order.billing_address
        return {
            "name": (address.name if address and address.name else None)
            or order.full_name
            or order.email,
            "address": {
                "country_code": (address.country if address else None) or "HU",
                "post_code": (address.zip_code if address else None) or "",
                "city": (address.city if address else None) or "",
                "address": (address.street if address else None) or "",
            },
            "emails": [order.email],
            "taxcode": "",
        }

    def build_items(self, order: Order) -> List[Dict[str, Any]]:
        items = [
            {
                "name": item.title,
                "unit_price": float(item.unit_price_gross),
                "unit_price_type": "gross",
                "quantity": item.quantity,
                "unit": "db",
                "vat": item.vat_rate or self.settings.default_vat_rate,
                "comment": item.sku or "",
            }
            for item in order.items
        ]
        if order.shipping_fee_gross and order.shipping_fee_gross > 0:
            items.append(
                {
                    "name": SHIPPING_LINE_NAME,
                    "unit_price": float(order.shipping_fee_gross),
                    "unit_price_type": "gross",
                    "quantity": 1,
                    "unit": "db",
                    "vat": self.settings.default_vat_rate,
                    "comment": order.shipping_method or "standard",
                }
            )
        return items

    def build_document(self, order: Order, partner_id: Union[int, str]) -> Dict[str, Any]:
        today = datetime.now(timezone.utc).date().isoformat()
        return {
            "partner_id": partner_id,
            "block_id": self.settings.billingo_block_id,
            "type": "invoice",
            "fulfillment_date": today,
            "due_date": today,
            "payment_method": "card",
            "language": "hu",
            "currency": order.currency or self.settings.default_currency,
            "paid": True,
            "items": self.build_items(order),
            "comment": f"Rendelés: {order.order_number or order.id}",
        }

    async def _acquire_claim(self, order_id: str, token: str) -> Optional[Order]:
        """
        Take the invoice claim, or wait for the holder to finish.

        Returns:
            Optional[Order]: None when this call holds the claim, otherwise
            the order as stored once another call set its invoice number

        Raises:
            OperationInProgressError: The holder did not finish in time
        """
        deadline = time.monotonic() + self.settings.claim_wait_seconds
        while True:
            stale_before = utcnow() - timedelta(seconds=self.settings.invoice_claim_ttl_seconds)
            if await self.store.claim_invoice(order_id, token, stale_before):
                return None

            order = await self.store.get_order(order_id)
            if order.invoice_number:
                return order

            if time.monotonic() >= deadline:
                logger.warning("invoice_claim_wait_timeout", order_id=order_id)
                raise OperationInProgressError(
                    "Invoice generation already in progress for this order"
                )
            await asyncio.sleep(self.settings.claim_poll_interval_seconds)

    async def generate(self, order_id: str, caller: CallerIdentity) -> InvoiceResult:
        """
        Create the invoice for a paid order, or return the one it already has.

        Raises:
            RateLimitExceededError: Caller over budget
            OrderNotFoundError: No such order
            OrderNotPaidError: Payment not confirmed
            OperationInProgressError: Another call holds the claim too long
            ProviderError: Partner or document creation failed
        """
        start = time.perf_counter()

        await self.rate_limiter.enforce(
            caller.user_id,
            GENERATE_INVOICE,
            self.settings.invoice_rate_limit,
            self.settings.invoice_rate_window_seconds,
        )

        log = logger.bind(order_id=order_id)
        order = await self.store.get_order(order_id)

        if order.payment_status != PaymentStatus.PAID:
            log.warning("invoice_order_not_paid", payment_status=order.payment_status)
            metrics.record_step("generate_invoice", "rejected")
            raise OrderNotPaidError("Order not paid yet")

        if order.invoice_number:
            log.info("invoice_already_exists", invoice_number=order.invoice_number)
            metrics.record_step("generate_invoice", "idempotent")
            return self._existing(order)

        token = uuid.uuid4().hex
        settled = await self._acquire_claim(order_id, token)
        if settled is not None:
            log.info("invoice_created_concurrently", invoice_number=settled.invoice_number)
            metrics.record_step("generate_invoice", "idempotent")
            return self._existing(settled)

        try:
            partner_id = await self.billingo.create_partner(self.build_partner(order))
            log.info("invoice_partner_created", partner_id=partner_id)
            if not await self.store.mark_invoice_requested(order_id, token):
                raise OperationInProgressError(
                    "Invoice generation already in progress for this order"
                )
            document = await self.billingo.create_document(self.build_document(order, partner_id))
        except Exception:
            await self.store.release_invoice_claim(order_id, token)
            metrics.record_step("generate_invoice", "error", time.perf_counter() - start)
            raise

        result = InvoiceResult(
            invoice_number=document.invoice_number,
            invoice_id=document.document_id,
            download_url=self.billingo.download_url(document.document_id),
        )

        try:
            stored = await self.store.set_invoice_number_if_unset(
                order_id, document.invoice_number, document.document_id
            )
        except SQLAlchemyError as e:
            # The claim stays held with its request mark, so no later call
            # issues a second document for this order.
            log.error(
                "invoice_number_persist_failed",
                invoice_number=document.invoice_number,
                invoice_id=document.document_id,
                error=str(e),
            )
            metrics.record_orphaned_effect("invoice_document")
            metrics.record_step("generate_invoice", "success", time.perf_counter() - start)
            return result

        if not stored:
            # Another call stored its number first.
            current = await self.store.get_order(order_id)
            log.error(
                "invoice_document_orphaned",
                orphan_invoice_number=document.invoice_number,
                orphan_invoice_id=document.document_id,
                stored_invoice_number=current.invoice_number,
            )
            metrics.record_orphaned_effect("invoice_document")
            return self._existing(current)

        log.info(
            "invoice_created",
            invoice_number=document.invoice_number,
            invoice_id=document.document_id,
        )
        metrics.record_step("generate_invoice", "success", time.perf_counter() - start)
        return result
