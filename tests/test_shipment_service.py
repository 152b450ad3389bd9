"""
Tests for shipment creation and tracking.
"""
import asyncio
import base64
import json

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from fulfillment.core.errors import (
    OperationInProgressError,
    OrderNotFoundError,
    OrderNotPaidError,
    ShipmentNotFoundError,
    ValidationFailedError,
)
from fulfillment.core.shipment_service import (
    PLACEHOLDER_NOTE,
    ShipmentCreator,
    ShipmentTracker,
    parcel_weight_kg,
)
from fulfillment.database.models import (
    OrderStatus,
    PaymentStatus,
    Shipment,
    ShipmentStatus,
)
from helpers import json_response, make_dpd, make_packeta


def booked(request: httpx.Request) -> httpx.Response:
    return json_response(
        200, {"parcel_number": "0987654321", "label_url": "https://dpd.test/labels/1.pdf"}
    )


def outage(request: httpx.Request) -> httpx.Response:
    return json_response(503, {"message": "Service unavailable"})


def packet_created(request: httpx.Request) -> httpx.Response:
    return json_response(
        200, {"id": "Z123456789", "labelUrl": "https://packeta.test/labels/Z1.pdf"}
    )


async def count_shipments(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(Shipment.id)))).scalar_one()


class TestShipmentCreator:
    """Test suite for ShipmentCreator."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_books_parcel_with_carrier(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1")
        dpd, transport = make_dpd(booked)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        result = await creator.create("O1", caller)

        assert result.already_existed is False
        assert result.note is None
        assert result.shipment.tracking_number == "0987654321"
        assert result.shipment.label_url == "https://dpd.test/labels/1.pdf"
        assert result.shipment.is_placeholder is False
        assert result.shipment.status == ShipmentStatus.PENDING

        sent = json.loads(transport.requests[0].content)
        assert sent["reference"] == "ORD-O1"
        assert sent["recipient"]["name"] == "Kiss Anna"
        assert sent["recipient"]["zip"] == "1011"
        assert sent["recipient"]["email"] == "a@b.hu"
        assert sent["parcel"] == {"weight": 2, "reference": "O1"}
        assert sent["service"] == "DPD Classic"

        order = await store.get_order("O1")
        assert order.status == OrderStatus.PROCESSING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_carrier_outage_creates_placeholder(
        self, store, rate_limiter, test_settings, seed_order, caller, clock
    ) -> None:
        await seed_order("O1")
        dpd, _ = make_dpd(outage)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings, clock=clock)

        result = await creator.create("O1", caller)

        expected = f"DPD-{int(clock() * 1000)}-ORD-O1"
        assert result.shipment.tracking_number == expected
        assert result.shipment.is_placeholder is True
        assert result.shipment.status == ShipmentStatus.PENDING
        assert result.note == PLACEHOLDER_NOTE
        assert result.to_dict()["success"] is True

        order = await store.get_order("O1")
        assert order.status == OrderStatus.PROCESSING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_carrier_unreachable_creates_placeholder(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1")

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        dpd, _ = make_dpd(unreachable)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        result = await creator.create("O1", caller)

        assert result.shipment.is_placeholder is True
        assert result.shipment.tracking_number.startswith("DPD-")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_call_returns_existing_without_carrier_call(
        self, store, rate_limiter, test_settings, seed_order, session_factory, caller
    ) -> None:
        await seed_order("O1")
        dpd, transport = make_dpd(booked)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        first = await creator.create("O1", caller)
        second = await creator.create("O1", caller)

        assert second.already_existed is True
        assert second.shipment.id == first.shipment.id
        assert len(transport.requests) == 1
        assert await count_shipments(session_factory) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_calls_book_once(
        self, store, rate_limiter, test_settings, seed_order, session_factory, caller
    ) -> None:
        await seed_order("O1")

        async def slow_booking(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.05)
            return booked(request)

        dpd, transport = make_dpd(slow_booking)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        results = await asyncio.gather(*[creator.create("O1", caller) for _ in range(6)])

        assert len(transport.requests) == 1
        assert await count_shipments(session_factory) == 1
        assert {result.shipment.tracking_number for result in results} == {"0987654321"}
        assert sum(1 for result in results if not result.already_existed) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_booking_is_taken_over(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1")
        abandoned = await store.claim_shipment("O1", "dpd", "crashed-holder")
        assert abandoned is not None
        settings = test_settings.model_copy(update={"invoice_claim_ttl_seconds": 0})
        dpd, transport = make_dpd(booked)
        creator = ShipmentCreator(store, rate_limiter, dpd, settings)

        result = await creator.create("O1", caller)

        assert result.shipment.id == abandoned.id
        assert result.shipment.tracking_number == "0987654321"
        assert len(transport.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_order_is_rejected(
        self, store, rate_limiter, test_settings, seed_order, session_factory, caller
    ) -> None:
        await seed_order("O1", payment_status=PaymentStatus.PENDING)
        dpd, transport = make_dpd(booked)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        with pytest.raises(OrderNotPaidError):
            await creator.create("O1", caller)

        assert transport.requests == []
        assert await count_shipments(session_factory) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_order(self, store, rate_limiter, test_settings, caller) -> None:
        dpd, _ = make_dpd(booked)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        with pytest.raises(OrderNotFoundError):
            await creator.create("missing", caller)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shipped_order_is_not_moved_back(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1", status=OrderStatus.SHIPPED)
        dpd, _ = make_dpd(booked)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        await creator.create("O1", caller)

        order = await store.get_order("O1")
        assert order.status == OrderStatus.SHIPPED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parcel_weight_uses_default_for_missing_weights(self, store, seed_order) -> None:
        await seed_order(
            "O1",
            items=[
                {"title": "A", "sku": "A", "quantity": 3, "unit_price_gross": 1, "weight_g": None},
                {"title": "B", "sku": "B", "quantity": 1, "unit_price_gross": 1, "weight_g": 1},
            ],
        )
        order = await store.get_order("O1")

        # 3 x 500 g + 1 g rounds up to 2 kg
        assert parcel_weight_kg(order) == 2
        assert parcel_weight_kg(order, default_item_weight_g=333) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unstored_booking_is_not_rebooked(
        self, store, rate_limiter, test_settings, seed_order, caller, monkeypatch
    ) -> None:
        await seed_order("O1")
        dpd, transport = make_dpd(booked)

        async def failing_complete(*args, **kwargs):
            raise OperationalError("UPDATE shipments", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "complete_shipment", failing_complete)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        result = await creator.create("O1", caller)

        assert result.shipment.tracking_number == "0987654321"
        assert result.shipment.is_placeholder is False
        assert result.note is None
        stored = await store.get_shipment_for_order("O1")
        assert stored.status == ShipmentStatus.BOOKING
        assert stored.carrier_requested_at is not None

        # Even once the booking is stale, nobody takes it over.
        monkeypatch.undo()
        settings = test_settings.model_copy(
            update={"invoice_claim_ttl_seconds": 0, "claim_wait_seconds": 0.05}
        )
        retry = ShipmentCreator(store, rate_limiter, dpd, settings)

        with pytest.raises(OperationInProgressError):
            await retry.create("O1", caller)

        assert len(transport.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unstored_placeholder_surfaces_error(
        self, store, rate_limiter, test_settings, seed_order, caller, monkeypatch
    ) -> None:
        await seed_order("O1")
        dpd, _ = make_dpd(outage)

        async def failing_complete(*args, **kwargs):
            raise OperationalError("UPDATE shipments", {}, Exception("database is locked"))

        monkeypatch.setattr(store, "complete_shipment", failing_complete)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        with pytest.raises(OperationalError):
            await creator.create("O1", caller)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_books_packet_at_pickup_point(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1")
        dpd, dpd_transport = make_dpd(booked)
        packeta, transport = make_packeta(packet_created)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings, packeta=packeta)

        result = await creator.create("O1", caller, carrier="packeta", pickup_point_id="4321")

        assert result.shipment.carrier == "packeta"
        assert result.shipment.tracking_number == "Z123456789"
        assert result.shipment.label_url == "https://packeta.test/labels/Z1.pdf"
        assert result.shipment.pickup_point_id == "4321"
        assert dpd_transport.requests == []

        request = transport.requests[0]
        assert request.url.path == "/api/rest/packet/create"
        credentials = base64.b64encode(b"test-packeta-key:test-packeta-password").decode()
        assert request.headers["authorization"] == f"Basic {credentials}"
        sent = json.loads(request.content)
        assert sent["number"] == "O1"
        assert sent["addressId"] == "4321"
        assert sent["name"] == "Kiss Anna"
        assert sent["value"] == 5000.0
        assert sent["currency"] == "HUF"
        assert sent["weight"] == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_packeta_outage_uses_its_own_prefix(
        self, store, rate_limiter, test_settings, seed_order, caller, clock
    ) -> None:
        await seed_order("O1")
        dpd, _ = make_dpd(booked)
        packeta, _ = make_packeta(outage)
        creator = ShipmentCreator(
            store, rate_limiter, dpd, test_settings, clock=clock, packeta=packeta
        )

        result = await creator.create("O1", caller, carrier="packeta")

        assert result.shipment.is_placeholder is True
        assert result.shipment.tracking_number == f"PKT-{int(clock() * 1000)}-ORD-O1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_carrier(
        self, store, rate_limiter, test_settings, seed_order, session_factory, caller
    ) -> None:
        await seed_order("O1")
        dpd, transport = make_dpd(booked)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings)

        with pytest.raises(ValidationFailedError) as exc_info:
            await creator.create("O1", caller, carrier="packeta")

        assert exc_info.value.details[0]["field"] == "carrier"
        assert transport.requests == []
        assert await count_shipments(session_factory) == 0


class TestShipmentTracker:
    """Test suite for ShipmentTracker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tracks_existing_shipment(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1")
        dpd, _ = make_dpd(booked)
        await ShipmentCreator(store, rate_limiter, dpd, test_settings).create("O1", caller)

        body = await ShipmentTracker(store, dpd).track("0987654321")

        assert body["shipment"]["orderId"] == "O1"
        assert body["trackingUrl"] == (
            "https://tracking.dpd.hu/parcel-tracking?parcelNumber=0987654321"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_tracking_number(self, store) -> None:
        dpd, _ = make_dpd(booked)

        with pytest.raises(ShipmentNotFoundError) as exc_info:
            await ShipmentTracker(store, dpd).track("NOPE")

        assert exc_info.value.status_code == 404

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_tracking_number(self, store) -> None:
        dpd, _ = make_dpd(booked)

        with pytest.raises(ValidationFailedError):
            await ShipmentTracker(store, dpd).track("")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tracking_url_follows_carrier(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1")
        dpd, _ = make_dpd(booked)
        packeta, _ = make_packeta(packet_created)
        creator = ShipmentCreator(store, rate_limiter, dpd, test_settings, packeta=packeta)
        await creator.create("O1", caller, carrier="packeta", pickup_point_id="4321")

        body = await ShipmentTracker(store, dpd, packeta).track("Z123456789")

        assert body["trackingUrl"] == "https://tracking.packeta.com/hu/?id=Z123456789"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pickup_points(self, store) -> None:
        def branches(request: httpx.Request) -> httpx.Response:
            return json_response(200, {"data": [{"id": "4321", "name": "Budapest Nyugati"}]})

        dpd, dpd_transport = make_dpd(booked)
        packeta, transport = make_packeta(branches)
        tracker = ShipmentTracker(store, dpd, packeta)

        points = await tracker.pickup_points("packeta", "hu")

        assert points == [{"id": "4321", "name": "Budapest Nyugati"}]
        assert transport.paths() == ["/api/v4/test-packeta-key/branch.json"]
        assert transport.requests[0].url.params["country"] == "HU"

        assert await tracker.pickup_points("dpd") == []
        assert dpd_transport.requests == []
