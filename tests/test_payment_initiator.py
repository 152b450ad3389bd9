"""
Tests for payment initiation.
"""
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from fulfillment.core.errors import RateLimitExceededError, ValidationFailedError
from fulfillment.core.payment_initiator import PaymentInitiator, PaymentItem, PaymentRequest
from fulfillment.database.models import Payment, PaymentStatus
from fulfillment.integrations.errors import ProviderError, ProviderUnavailableError
from helpers import json_response, make_barion


def o1_request(**overrides) -> PaymentRequest:
    values = dict(
        order_id="O1",
        amount=Decimal("5000"),
        currency="HUF",
        payer_email="a@b.hu",
        items=[
            PaymentItem(
                name="Ceramic mug",
                quantity=2,
                unit_price=Decimal("2500"),
                item_total=Decimal("5000"),
                sku="MUG-01",
            )
        ],
    )
    values.update(overrides)
    return PaymentRequest(**values)


def barion_started(request: httpx.Request) -> httpx.Response:
    return json_response(
        200,
        {
            "PaymentId": "pay-123",
            "PaymentRequestId": "O1",
            "Status": "Prepared",
            "GatewayUrl": "https://secure.test.barion.com/Pay?id=pay-123",
            "Errors": [],
        },
    )


async def count_payments(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(Payment.id)))).scalar_one()


class TestPaymentInitiator:
    """Test suite for PaymentInitiator."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_o1_creates_one_pending_payment(
        self, store, rate_limiter, test_settings, seed_order, session_factory, caller
    ) -> None:
        await seed_order("O1", payment_status=PaymentStatus.UNPAID)
        barion, transport = make_barion(barion_started)
        initiator = PaymentInitiator(store, rate_limiter, barion, test_settings)

        result = await initiator.initiate(o1_request(), caller)

        assert result.payment_id == "pay-123"
        assert result.to_dict() == {
            "success": True,
            "paymentId": "pay-123",
            "gatewayUrl": "https://secure.test.barion.com/Pay?id=pay-123",
            "redirectUrl": "https://secure.test.barion.com/Pay?id=pay-123",
        }

        payment = await store.get_payment_by_reference("pay-123")
        assert payment is not None
        assert payment.order_id == "O1"
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == Decimal("5000")
        assert payment.currency == "HUF"
        assert await count_payments(session_factory) == 1

        # Order is untouched until the gateway confirms
        order = await store.get_order("O1")
        assert order.payment_status == PaymentStatus.UNPAID

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_request_is_keyed_by_order(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1", payment_status=PaymentStatus.UNPAID)
        barion, transport = make_barion(barion_started)
        initiator = PaymentInitiator(store, rate_limiter, barion, test_settings)

        await initiator.initiate(o1_request(), caller)

        assert transport.paths() == ["/v2/Payment/Start"]
        sent = json.loads(transport.requests[0].content)
        assert sent["PaymentRequestId"] == "O1"
        assert sent["PayerHint"] == "a@b.hu"
        assert sent["Currency"] == "HUF"
        assert sent["CallbackUrl"] == "https://shop.test/webhooks/barion"
        assert sent["RedirectUrl"] == "https://shop.test/rendeles/O1/megerosites"
        transaction = sent["Transactions"][0]
        assert transaction["POSTransactionId"] == "O1-1"
        assert transaction["Payee"] == "shop@example.hu"
        assert transaction["Total"] == 5000
        assert transaction["Items"][0]["SKU"] == "MUG-01"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_errors_abort_without_payment(
        self, store, rate_limiter, test_settings, seed_order, session_factory, caller
    ) -> None:
        await seed_order("O1", payment_status=PaymentStatus.UNPAID)

        def rejected(request: httpx.Request) -> httpx.Response:
            return json_response(
                200,
                {
                    "Errors": [
                        {
                            "ErrorCode": "InvalidCurrency",
                            "Title": "Invalid currency",
                            "Description": "The currency is not supported",
                        }
                    ]
                },
            )

        barion, _ = make_barion(rejected)
        initiator = PaymentInitiator(store, rate_limiter, barion, test_settings)

        with pytest.raises(ProviderError) as exc_info:
            await initiator.initiate(o1_request(), caller)

        error = exc_info.value
        assert error.provider == "barion"
        assert error.status_code == 400
        assert error.details == [
            {
                "code": "InvalidCurrency",
                "title": "Invalid currency",
                "detail": "The currency is not supported",
            }
        ]
        assert await count_payments(session_factory) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_unreachable(
        self, store, rate_limiter, test_settings, seed_order, session_factory, caller
    ) -> None:
        await seed_order("O1", payment_status=PaymentStatus.UNPAID)

        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        barion, _ = make_barion(unreachable)
        initiator = PaymentInitiator(store, rate_limiter, barion, test_settings)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await initiator.initiate(o1_request(), caller)

        assert exc_info.value.status_code == 502
        assert await count_payments(session_factory) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_persist_failure_still_returns_success(
        self, rate_limiter, test_settings, caller
    ) -> None:
        store = AsyncMock()
        store.insert_payment.side_effect = OperationalError("INSERT", {}, Exception("db down"))
        barion, _ = make_barion(barion_started)
        initiator = PaymentInitiator(store, rate_limiter, barion, test_settings)

        result = await initiator.initiate(o1_request(), caller)

        assert result.payment_id == "pay-123"
        store.insert_payment.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": Decimal("-1")},
            {"currency": "HU"},
            {"order_id": ""},
            {"payer_email": "not-an-email"},
            {
                "items": [
                    PaymentItem(
                        name="Mug", quantity=0, unit_price=Decimal("1"), item_total=Decimal("0")
                    )
                ]
            },
            {
                "items": [
                    PaymentItem(
                        name="Mug", quantity=1, unit_price=Decimal("-1"), item_total=Decimal("0")
                    )
                ]
            },
        ],
    )
    async def test_invalid_input_rejected_before_gateway(
        self, store, rate_limiter, test_settings, caller, overrides
    ) -> None:
        barion, transport = make_barion(barion_started)
        initiator = PaymentInitiator(store, rate_limiter, barion, test_settings)

        with pytest.raises(ValidationFailedError):
            await initiator.initiate(o1_request(**overrides), caller)

        assert transport.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sixth_request_in_window_is_throttled(
        self, store, rate_limiter, test_settings, seed_order, caller
    ) -> None:
        await seed_order("O1", payment_status=PaymentStatus.UNPAID)
        counter = {"n": 0}

        def started(request: httpx.Request) -> httpx.Response:
            counter["n"] += 1
            return json_response(
                200, {"PaymentId": f"pay-{counter['n']}", "GatewayUrl": "https://gw", "Errors": []}
            )

        barion, transport = make_barion(started)
        initiator = PaymentInitiator(store, rate_limiter, barion, test_settings)

        for _ in range(5):
            await initiator.initiate(o1_request(), caller)

        with pytest.raises(RateLimitExceededError):
            await initiator.initiate(o1_request(), caller)

        assert len(transport.requests) == 5
