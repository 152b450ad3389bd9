"""
Pytest configuration and fixtures.

The store runs on a per-test SQLite file through aiosqlite, Redis is
fakeredis with Lua support, and providers are httpx clients over
``httpx.MockTransport``.
"""
import os

os.environ.setdefault("BARION_POS_KEY", "test-pos-key")
os.environ.setdefault("BARION_PAYEE_EMAIL", "shop@example.hu")
os.environ.setdefault("BILLINGO_API_KEY", "test-billingo-key")
os.environ.setdefault("DPD_API_KEY", "test-dpd-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fulfillment.config import Settings
from fulfillment.core.rate_limiter import RateLimiter
from fulfillment.database.connection import create_session_factory
from fulfillment.database.models import (
    Address,
    Base,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Variant,
)
from fulfillment.database.store import OrderStateStore
from fulfillment.integrations.auth import CallerIdentity
from helpers import FakeClock


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        barion_pos_key="test-pos-key",
        barion_payee_email="shop@example.hu",
        barion_api_url="https://barion.test/v2",
        billingo_api_key="test-billingo-key",
        billingo_api_url="https://billingo.test/v3",
        dpd_api_key="test-dpd-key",
        dpd_api_url="https://dpd.test/v1",
        public_base_url="https://shop.test",
        barion_redirect_base_url="https://shop.test",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="fulfillment-test",
        app_env="test",
        log_level="DEBUG",
        claim_wait_seconds=5.0,
        claim_poll_interval_seconds=0.01,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def caller() -> CallerIdentity:
    return CallerIdentity(user_id="user-1", email="a@b.hu")


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> OrderStateStore:
    return OrderStateStore(session_factory)


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, Any]:
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.aclose()


@pytest.fixture
def rate_limiter(redis_client: fakeredis.FakeAsyncRedis, clock: FakeClock) -> RateLimiter:
    return RateLimiter(redis_client, clock=clock)


@pytest.fixture
def seed_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    """Factory inserting an order with addresses, two items and their variants."""

    async def _seed(
        order_id: str = "O1",
        payment_status: str = PaymentStatus.PAID,
        status: Optional[str] = None,
        invoice_number: Optional[str] = None,
        invoice_id: Optional[str] = None,
        shipping_fee_gross: Decimal = Decimal("1490"),
        stock: int = 10,
        items: Optional[List[Dict[str, Any]]] = None,
    ) -> Order:
        if status is None:
            status = (
                OrderStatus.PAID if payment_status == PaymentStatus.PAID else OrderStatus.CREATED
            )
        items = items if items is not None else [
            {"title": "Ceramic mug", "sku": "MUG-01", "quantity": 2,
             "unit_price_gross": Decimal("2500"), "weight_g": 400},
            {"title": "Linen towel", "sku": "TWL-02", "quantity": 1,
             "unit_price_gross": Decimal("3990"), "weight_g": None, "vat_rate": "18"},
        ]

        async with session_factory.begin() as session:
            billing = Address(
                name="Kiss Anna", street="Fő utca 1", city="Budapest", zip_code="1011"
            )
            shipping = Address(
                name="Kiss Anna", street="Fő utca 1", city="Budapest",
                zip_code="1011", phone="+36301234567",
            )
            session.add_all([billing, shipping])
            await session.flush()

            order = Order(
                id=order_id,
                order_number=f"ORD-{order_id}",
                email="a@b.hu",
                full_name="Kiss Anna",
                total_gross=Decimal("5000"),
                currency="HUF",
                shipping_fee_gross=shipping_fee_gross,
                shipping_method="dpd",
                payment_status=payment_status,
                status=status,
                invoice_number=invoice_number,
                invoice_id=invoice_id,
                billing_address_id=billing.id,
                shipping_address_id=shipping.id,
            )
            session.add(order)
            await session.flush()

            for position, line in enumerate(items):
                variant = Variant(sku=f"{order_id}-{line['sku']}", stock=stock)
                session.add(variant)
                await session.flush()
                session.add(
                    OrderItem(
                        order_id=order_id,
                        variant_id=variant.id,
                        position=position,
                        title=line["title"],
                        sku=line["sku"],
                        quantity=line["quantity"],
                        unit_price_gross=line["unit_price_gross"],
                        weight_g=line.get("weight_g"),
                        vat_rate=line.get("vat_rate"),
                    )
                )
        return order

    return _seed

