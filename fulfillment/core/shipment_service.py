"""
Shipment creation and tracking.

A shipment row is inserted in ``booking`` state before the carrier is
called; the unique ``order_id`` on shipments makes that insert the claim.
The row is marked just before the carrier call, and a marked row is never
taken over, so a booking whose result could not be stored is never repeated.
When the carrier rejects the booking or cannot be reached, the shipment is
completed with a locally generated placeholder tracking number so the order
can still progress.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError

from fulfillment.config import Settings, get_settings
from fulfillment.core.errors import (
    OperationInProgressError,
    OrderNotPaidError,
    ShipmentNotFoundError,
    ValidationFailedError,
)
from fulfillment.core.rate_limiter import RateLimiter
from fulfillment.database.models import Order, OrderStatus, PaymentStatus, Shipment, ShipmentStatus
from fulfillment.database.store import OrderStateStore, utcnow
from fulfillment.integrations.auth import CallerIdentity
from fulfillment.integrations.dpd_client import BookedParcel, DPDClient
from fulfillment.integrations.errors import ProviderError
from fulfillment.integrations.packeta_client import PacketaClient
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CREATE_SHIPMENT = "create-shipment"
CARRIER = "dpd"
PACKETA = "packeta"
PLACEHOLDER_NOTE = "Mock shipment created (carrier unavailable)"

CarrierClient = Union[DPDClient, PacketaClient]


@dataclass
class ShipmentResult:
    shipment: Shipment
    already_existed: bool = False
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "shipment": self.shipment.to_dict(),
            "trackingNumber": self.shipment.tracking_number,
            "labelUrl": self.shipment.label_url,
            "alreadyExisted": self.already_existed,
        }
        if self.note:
            body["note"] = self.note
        return body


def parcel_weight_kg(order: Order, default_item_weight_g: int = 500) -> int:
    """Total order weight in whole kilograms, rounded up."""
    total_g = sum(
        (item.weight_g or default_item_weight_g) * item.quantity for item in order.items
    )
    return -(-total_g // 1000)


def carrier_clients(dpd: DPDClient, packeta: Optional[PacketaClient] = None) -> Dict[str, CarrierClient]:
    clients: Dict[str, CarrierClient] = {CARRIER: dpd}
    if packeta is not None:
        clients[PACKETA] = packeta
    return clients


class ShipmentCreator:
    """Books one shipment per paid order, falling back to a placeholder."""

    def __init__(
        self,
        store: OrderStateStore,
        rate_limiter: RateLimiter,
        dpd: DPDClient,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], float]] = None,
        packeta: Optional[PacketaClient] = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.dpd = dpd
        self.packeta = packeta
        self.carriers = carrier_clients(dpd, packeta)
        self.settings = settings or get_settings()
        self.clock = clock or time.time

    def placeholder_tracking_number(self, order: Order, carrier: str = CARRIER) -> str:
        prefix = (
            self.settings.packeta_placeholder_prefix
            if carrier == PACKETA
            else self.settings.placeholder_tracking_prefix
        )
        epoch_ms = int(self.clock() * 1000)
        return f"{prefix}-{epoch_ms}-{order.order_number or order.id}"

    def build_recipient(self, order: Order) -> Dict[str, Any]:
        address = order.shipping_address
        return {
            "name": (address.name if address and address.name else None) or order.full_name,
            "address": address.street if address else None,
            "city": address.city if address else None,
            "zip": address.zip_code if address else None,
            "country": (address.country if address else None) or "HU",
            "phone": address.phone if address else None,
            "email": order.email,
        }

    async def _book(self, carrier: str, order: Order, pickup_point_id: Optional[str]) -> BookedParcel:
        weight_kg = parcel_weight_kg(order, self.settings.default_item_weight_g)
        if carrier == PACKETA:
            return await self.packeta.create_packet(
                number=order.id,
                recipient=self.build_recipient(order),
                pickup_point_id=pickup_point_id,
                value=order.total_gross,
                currency=order.currency or self.settings.default_currency,
                weight_kg=weight_kg,
            )
        return await self.dpd.create_shipment(
            reference=order.order_number or order.id,
            recipient=self.build_recipient(order),
            weight_kg=weight_kg,
            parcel_reference=order.id,
        )

    async def _acquire_claim(
        self, order_id: str, carrier: str, token: str, pickup_point_id: Optional[str]
    ) -> tuple[Optional[Shipment], bool]:
        """
        Insert the booking row, take over a stale one, or wait for the holder.

        Returns:
            tuple: (shipment, claimed). ``claimed`` is True when this call
            must book the parcel; otherwise the shipment is already complete.

        Raises:
            OperationInProgressError: The holder did not finish in time
        """
        claimed = await self.store.claim_shipment(order_id, carrier, token, pickup_point_id)
        if claimed is not None:
            return claimed, True

        deadline = time.monotonic() + self.settings.claim_wait_seconds
        while True:
            existing = await self.store.get_shipment_for_order(order_id)
            if existing is not None and existing.status != ShipmentStatus.BOOKING:
                return existing, False

            if existing is not None:
                stale_before = utcnow() - timedelta(seconds=self.settings.invoice_claim_ttl_seconds)
                if await self.store.reclaim_stale_shipment(existing.id, token, stale_before):
                    logger.warning("shipment_stale_claim_taken_over", order_id=order_id)
                    return existing, True

            if time.monotonic() >= deadline:
                logger.warning("shipment_claim_wait_timeout", order_id=order_id)
                raise OperationInProgressError(
                    "Shipment creation already in progress for this order"
                )
            await asyncio.sleep(self.settings.claim_poll_interval_seconds)

    async def create(
        self,
        order_id: str,
        caller: CallerIdentity,
        carrier: str = CARRIER,
        pickup_point_id: Optional[str] = None,
    ) -> ShipmentResult:
        """
        Create the shipment for a paid order, or return the existing one.

        Raises:
            ValidationFailedError: Carrier not supported
            RateLimitExceededError: Caller over budget
            OrderNotFoundError: No such order
            OrderNotPaidError: Payment not confirmed
            OperationInProgressError: Another call holds the booking too long
        """
        start = time.perf_counter()

        if carrier not in self.carriers:
            raise ValidationFailedError(
                "Unsupported carrier",
                details=[{"field": "carrier", "message": f"Supported: {', '.join(self.carriers)}"}],
            )

        await self.rate_limiter.enforce(
            caller.user_id,
            CREATE_SHIPMENT,
            self.settings.shipment_rate_limit,
            self.settings.shipment_rate_window_seconds,
        )

        log = logger.bind(order_id=order_id, carrier=carrier)
        order = await self.store.get_order(order_id)

        if order.payment_status != PaymentStatus.PAID:
            log.warning("shipment_order_not_paid", payment_status=order.payment_status)
            metrics.record_step("create_shipment", "rejected")
            raise OrderNotPaidError("Order not paid")

        existing = await self.store.get_shipment_for_order(order_id)
        if existing is not None and existing.status != ShipmentStatus.BOOKING:
            log.info("shipment_already_exists", tracking_number=existing.tracking_number)
            await self.store.advance_order_status(order_id, OrderStatus.PROCESSING)
            metrics.record_step("create_shipment", "idempotent")
            return ShipmentResult(shipment=existing, already_existed=True)

        token = uuid.uuid4().hex
        shipment, claimed = await self._acquire_claim(order_id, carrier, token, pickup_point_id)
        if not claimed:
            metrics.record_step("create_shipment", "idempotent")
            return ShipmentResult(shipment=shipment, already_existed=True)

        if not await self.store.mark_carrier_requested(shipment.id, token):
            raise OperationInProgressError("Shipment creation already in progress for this order")

        note = None
        try:
            parcel = await self._book(carrier, order, pickup_point_id)
            tracking_number, label_url, is_placeholder = (
                parcel.tracking_number,
                parcel.label_url,
                False,
            )
        except ProviderError as e:
            log.error(
                "carrier_booking_failed_using_placeholder",
                provider=e.provider,
                error=e.message,
                errors=[detail.to_dict() for detail in e.errors],
            )
            metrics.record_shipment_fallback(carrier)
            tracking_number = self.placeholder_tracking_number(order, carrier)
            label_url, is_placeholder, note = None, True, PLACEHOLDER_NOTE

        try:
            completed = await self.store.complete_shipment(
                shipment.id, token, tracking_number, label_url, is_placeholder
            )
        except SQLAlchemyError as e:
            log.error(
                "shipment_persist_failed",
                tracking_number=tracking_number,
                is_placeholder=is_placeholder,
                error=str(e),
            )
            if is_placeholder:
                raise
            metrics.record_orphaned_effect("shipment")
            shipment.tracking_number = tracking_number
            shipment.label_url = label_url
            shipment.is_placeholder = False
            shipment.status = ShipmentStatus.PENDING
            metrics.record_step("create_shipment", "success", time.perf_counter() - start)
            return ShipmentResult(shipment=shipment)

        if completed is None:
            # Claim was taken over while the carrier call was in flight.
            current = await self.store.get_shipment_for_order(order_id)
            log.error(
                "shipment_claim_lost",
                orphan_tracking_number=tracking_number,
                is_placeholder=is_placeholder,
            )
            if not is_placeholder:
                metrics.record_orphaned_effect("shipment")
            if current is None or current.status == ShipmentStatus.BOOKING:
                raise OperationInProgressError(
                    "Shipment creation already in progress for this order"
                )
            return ShipmentResult(shipment=current, already_existed=True)

        await self.store.advance_order_status(order_id, OrderStatus.PROCESSING)

        log.info(
            "shipment_created",
            tracking_number=tracking_number,
            is_placeholder=is_placeholder,
        )
        metrics.record_step("create_shipment", "success", time.perf_counter() - start)
        return ShipmentResult(shipment=completed, note=note)


class ShipmentTracker:
    """Read-only carrier lookups: shipments by tracking number, pickup points."""

    def __init__(
        self,
        store: OrderStateStore,
        dpd: DPDClient,
        packeta: Optional[PacketaClient] = None,
    ):
        self.store = store
        self.carriers = carrier_clients(dpd, packeta)

    async def track(self, tracking_number: Optional[str]) -> Dict[str, Any]:
        if not tracking_number:
            raise ValidationFailedError("Missing tracking number")

        shipment = await self.store.get_shipment_by_tracking_number(tracking_number)
        if shipment is None:
            raise ShipmentNotFoundError("Shipment not found")

        client = self.carriers.get(shipment.carrier, self.carriers[CARRIER])
        return {
            "success": True,
            "shipment": shipment.to_dict(),
            "trackingUrl": client.tracking_url(tracking_number),
        }

    async def pickup_points(self, carrier: str = PACKETA, country: str = "HU") -> List[Dict[str, Any]]:
        """Pickup points of ``carrier``; carriers without any return an empty list."""
        client = self.carriers.get(carrier)
        if not isinstance(client, PacketaClient):
            return []
        return await client.list_pickup_points(country.upper())
