"""
Order State Store.

The only component that reads or writes order, payment, shipment and webhook
rows. Every mutation that guards an at-most-once step is a single conditional
statement (``UPDATE ... WHERE <guard>`` or an INSERT against a unique
constraint) run in its own short transaction, so concurrent request handlers
on separate processes cannot both pass the guard.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from fulfillment.core.errors import OrderNotFoundError
from fulfillment.database.connection import get_session_factory
from fulfillment.database.models import (
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Shipment,
    ShipmentStatus,
    Variant,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStateStore:
    """Authoritative record of order status, payments, invoices and shipments."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    # -- orders -------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        """
        Load an order with its addresses and line items.

        Raises:
            OrderNotFoundError: If no order has this id
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .options(
                selectinload(Order.items),
                selectinload(Order.billing_address),
                selectinload(Order.shipping_address),
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            order = result.scalar_one_or_none()

        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def advance_order_status(self, order_id: str, target: str) -> bool:
        """
        Move an order forward to ``target``.

        Only succeeds from a status earlier in the lifecycle; an order is
        never moved backward.

        Returns:
            bool: True if the row changed
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status.in_(OrderStatus.before(target)))
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt)

        advanced = result.rowcount > 0
        logger.info(
            "order_status_advance",
            order_id=order_id,
            target=target,
            advanced=advanced,
        )
        return advanced

    # -- payments -----------------------------------------------------------

    async def insert_payment(
        self,
        order_id: str,
        provider: str,
        amount: Decimal,
        currency: str,
        provider_reference: str,
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """Record a pending payment after the gateway accepted the start request."""
        payment = Payment(
            order_id=order_id,
            provider=provider,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            provider_reference=provider_reference,
            raw_response=raw_response,
        )
        async with self._session_factory.begin() as session:
            session.add(payment)
        return payment

    async def get_payment_by_reference(self, provider_reference: str) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.provider_reference == provider_reference)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def apply_payment_outcome(
        self,
        payment: Payment,
        payment_status: str,
        raw_state: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, List[str]]:
        """
        Apply a confirmed gateway state to the payment and its order.

        ``paid`` is terminal for both the payment and the order's
        payment_status; a late ``failed`` callback cannot undo it. The call
        that moves the order to paid also takes its quantities off stock in
        the same transaction.

        Returns:
            Tuple[bool, List[str]]: Whether this call moved the order to paid,
            and the variant ids whose stock could not cover the order
        """
        now = utcnow()
        became_paid = False
        shortfalls: List[str] = []

        async with self._session_factory.begin() as session:
            values: Dict[str, Any] = {"raw_response": raw_state, "updated_at": now}
            if payment_status != PaymentStatus.PENDING:
                values["status"] = payment_status
            await session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status != PaymentStatus.PAID)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if payment_status == PaymentStatus.PAID:
                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == payment.order_id,
                        Order.payment_status != PaymentStatus.PAID,
                    )
                    .values(payment_status=PaymentStatus.PAID, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                became_paid = result.rowcount > 0
                if became_paid:
                    shortfalls = await self._take_stock(session, payment.order_id)
                await session.execute(
                    update(Order)
                    .where(
                        Order.id == payment.order_id,
                        Order.status.in_(OrderStatus.before(OrderStatus.PAID)),
                    )
                    .values(status=OrderStatus.PAID, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            elif payment_status == PaymentStatus.FAILED:
                await session.execute(
                    update(Order)
                    .where(
                        Order.id == payment.order_id,
                        Order.payment_status != PaymentStatus.PAID,
                    )
                    .values(payment_status=PaymentStatus.FAILED, updated_at=now)
                    .execution_options(synchronize_session=False)
                )

        return became_paid, shortfalls

    async def _take_stock(self, session: AsyncSession, order_id: str) -> List[str]:
        """
        Take the order's quantities off variant stock inside ``session``.

        Stock never goes below zero; items that could not be covered are
        returned by variant id instead of failing the whole order.
        """
        shortfalls: List[str] = []
        result = await session.execute(
            select(OrderItem.variant_id, OrderItem.quantity).where(
                OrderItem.order_id == order_id, OrderItem.variant_id.is_not(None)
            )
        )
        for variant_id, quantity in result.all():
            updated = await session.execute(
                update(Variant)
                .where(Variant.id == variant_id, Variant.stock >= quantity)
                .values(stock=Variant.stock - quantity)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 0:
                shortfalls.append(variant_id)
        return shortfalls

    # -- invoices -----------------------------------------------------------

    async def claim_invoice(self, order_id: str, token: str, stale_before: datetime) -> bool:
        """
        Take the right to talk to the invoicing provider for this order.

        Succeeds only while no invoice number is stored and nobody else holds
        a claim younger than ``stale_before``. A stale claim whose holder
        already asked the provider for a document is not taken over.
        """
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.invoice_number.is_(None),
                (Order.invoice_claim_token.is_(None))
                | (
                    (Order.invoice_claimed_at < stale_before)
                    & Order.invoice_requested_at.is_(None)
                ),
            )
            .values(invoice_claim_token=token, invoice_claimed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def mark_invoice_requested(self, order_id: str, token: str) -> bool:
        """Record that the claim holder is about to request a document."""
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.invoice_claim_token == token)
            .values(invoice_requested_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def release_invoice_claim(self, order_id: str, token: str) -> None:
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.invoice_claim_token == token)
            .values(invoice_claim_token=None, invoice_claimed_at=None, invoice_requested_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            await session.execute(stmt)

    async def set_invoice_number_if_unset(
        self, order_id: str, invoice_number: str, invoice_id: Optional[str]
    ) -> bool:
        """
        Compare-and-set the invoice number.

        Returns:
            bool: False if an invoice number was already stored
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.invoice_number.is_(None))
            .values(
                invoice_number=invoice_number,
                invoice_id=invoice_id,
                invoice_claim_token=None,
                invoice_claimed_at=None,
                invoice_requested_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    # -- shipments ----------------------------------------------------------

    async def get_shipment_for_order(self, order_id: str) -> Optional[Shipment]:
        stmt = select(Shipment).where(Shipment.order_id == order_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_shipment_by_tracking_number(self, tracking_number: str) -> Optional[Shipment]:
        stmt = select(Shipment).where(Shipment.tracking_number == tracking_number)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def claim_shipment(
        self,
        order_id: str,
        carrier: str,
        token: str,
        pickup_point_id: Optional[str] = None,
    ) -> Optional[Shipment]:
        """
        Insert the order's shipment row in ``booking`` state.

        Returns:
            Optional[Shipment]: The claimed row, or None if the order already
            has a shipment (unique ``order_id``)
        """
        shipment = Shipment(
            order_id=order_id,
            carrier=carrier,
            status=ShipmentStatus.BOOKING,
            claim_token=token,
            claimed_at=utcnow(),
            pickup_point_id=pickup_point_id,
        )
        try:
            async with self._session_factory.begin() as session:
                session.add(shipment)
        except IntegrityError:
            logger.info("shipment_claim_conflict", order_id=order_id)
            return None
        return shipment

    async def reclaim_stale_shipment(
        self, shipment_id: str, token: str, stale_before: datetime
    ) -> bool:
        """
        Take over a booking whose holder never finished it.

        Only bookings whose holder never reached the carrier qualify.
        """
        stmt = (
            update(Shipment)
            .where(
                Shipment.id == shipment_id,
                Shipment.status == ShipmentStatus.BOOKING,
                Shipment.claimed_at < stale_before,
                Shipment.carrier_requested_at.is_(None),
            )
            .values(claim_token=token, claimed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def mark_carrier_requested(self, shipment_id: str, token: str) -> bool:
        stmt = (
            update(Shipment)
            .where(Shipment.id == shipment_id, Shipment.claim_token == token)
            .values(carrier_requested_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def complete_shipment(
        self,
        shipment_id: str,
        token: str,
        tracking_number: str,
        label_url: Optional[str],
        is_placeholder: bool,
    ) -> Optional[Shipment]:
        """
        Store the booking result on a claimed shipment.

        Returns:
            Optional[Shipment]: The updated row, or None if the claim was lost
        """
        stmt = (
            update(Shipment)
            .where(
                Shipment.id == shipment_id,
                Shipment.claim_token == token,
                Shipment.status == ShipmentStatus.BOOKING,
            )
            .values(
                tracking_number=tracking_number,
                label_url=label_url,
                is_placeholder=is_placeholder,
                status=ShipmentStatus.PENDING,
                claim_token=None,
                carrier_requested_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                return None
            refreshed = await session.execute(select(Shipment).where(Shipment.id == shipment_id))
            return refreshed.scalar_one()

    # -- webhook events -----------------------------------------------------

    async def record_webhook_event(
        self,
        event_id: str,
        provider: str,
        event_type: str,
        payload: Optional[Dict[str, Any]],
    ) -> Tuple[WebhookEvent, bool]:
        """
        Log an incoming callback, or fetch the earlier record of it.

        Returns:
            Tuple[WebhookEvent, bool]: The event row and whether it was created
        """
        event = WebhookEvent(
            event_id=event_id,
            provider=provider,
            event_type=event_type,
            payload=payload,
            processed=False,
        )
        try:
            async with self._session_factory.begin() as session:
                session.add(event)
            return event, True
        except IntegrityError:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(WebhookEvent).where(WebhookEvent.event_id == event_id)
                )
                return result.scalar_one(), False

    async def mark_webhook_event(
        self,
        event_id: str,
        processed: bool = False,
        error_message: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"error_message": error_message}
        if processed:
            values.update(processed=True, processed_at=utcnow())
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory.begin() as session:
            await session.execute(stmt)
