"""
Service wiring and request dependencies.

All long-lived collaborators (database store, Redis, provider HTTP clients)
are built once per application and shared by every request.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Header, Request

from fulfillment.config import Settings, get_settings
from fulfillment.core.errors import UnauthorizedError
from fulfillment.core.invoice_generator import InvoiceGenerator
from fulfillment.core.payment_confirmation import PaymentConfirmationHandler
from fulfillment.core.payment_initiator import PaymentInitiator
from fulfillment.core.rate_limiter import RateLimiter
from fulfillment.core.shipment_service import ShipmentCreator, ShipmentTracker
from fulfillment.database.connection import get_session_factory
from fulfillment.database.store import OrderStateStore
from fulfillment.integrations.auth import CallerIdentity, HttpAuthVerifier
from fulfillment.integrations.barion_client import BarionClient
from fulfillment.integrations.billingo_client import BillingoClient
from fulfillment.integrations.dpd_client import DPDClient
from fulfillment.integrations.packeta_client import PacketaClient
from fulfillment.monitoring.health import HealthCheck


@dataclass
class ServiceContainer:
    """Everything a request handler needs, built once per application."""

    settings: Settings
    store: OrderStateStore
    redis: aioredis.Redis
    rate_limiter: RateLimiter
    auth: HttpAuthVerifier
    barion: BarionClient
    billingo: BillingoClient
    dpd: DPDClient
    packeta: Optional[PacketaClient]
    payment_initiator: PaymentInitiator
    payment_confirmation: PaymentConfirmationHandler
    invoice_generator: InvoiceGenerator
    shipment_creator: ShipmentCreator
    shipment_tracker: ShipmentTracker
    health: HealthCheck

    @classmethod
    def assemble(
        cls,
        settings: Settings,
        store: OrderStateStore,
        redis_client: aioredis.Redis,
        auth: HttpAuthVerifier,
        barion: BarionClient,
        billingo: BillingoClient,
        dpd: DPDClient,
        packeta: Optional[PacketaClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> "ServiceContainer":
        """Wire the orchestration services on top of the given collaborators."""
        rate_limiter = rate_limiter or RateLimiter(
            redis_client, fail_open=settings.rate_limit_fail_open
        )
        return cls(
            settings=settings,
            store=store,
            redis=redis_client,
            rate_limiter=rate_limiter,
            auth=auth,
            barion=barion,
            billingo=billingo,
            dpd=dpd,
            packeta=packeta,
            payment_initiator=PaymentInitiator(store, rate_limiter, barion, settings),
            payment_confirmation=PaymentConfirmationHandler(store, rate_limiter, barion, settings),
            invoice_generator=InvoiceGenerator(store, rate_limiter, billingo, settings),
            shipment_creator=ShipmentCreator(
                store, rate_limiter, dpd, settings, packeta=packeta
            ),
            shipment_tracker=ShipmentTracker(store, dpd, packeta),
            health=HealthCheck(redis_client, store.session_factory),
        )

    async def close(self) -> None:
        """Close provider HTTP clients and the Redis connection."""
        for client in (self.barion, self.billingo, self.dpd, self.packeta, self.auth):
            if client is not None:
                await client.close()
        await self.redis.aclose()


def build_services(settings: Optional[Settings] = None) -> ServiceContainer:
    """Build the production service container from settings."""
    settings = settings or get_settings()
    timeout = settings.provider_timeout_seconds

    return ServiceContainer.assemble(
        settings=settings,
        store=OrderStateStore(get_session_factory()),
        redis_client=aioredis.from_url(settings.redis_url, decode_responses=True),
        auth=HttpAuthVerifier(settings.auth_url, settings.auth_api_key),
        barion=BarionClient(
            pos_key=settings.barion_pos_key,
            payee_email=settings.barion_payee_email,
            base_url=settings.barion_api_url,
            locale=settings.barion_locale,
            timeout=timeout,
        ),
        billingo=BillingoClient(
            api_key=settings.billingo_api_key,
            base_url=settings.billingo_api_url,
            timeout=timeout,
        ),
        dpd=DPDClient(
            api_key=settings.dpd_api_key,
            base_url=settings.dpd_api_url,
            service=settings.dpd_service,
            tracking_url_template=settings.dpd_tracking_url_template,
            timeout=timeout,
        ),
        packeta=PacketaClient(
            api_key=settings.packeta_api_key,
            api_password=settings.packeta_api_password,
            base_url=settings.packeta_api_url,
            branch_url=settings.packeta_branch_url,
            eshop=settings.packeta_eshop,
            tracking_url_template=settings.packeta_tracking_url_template,
            timeout=timeout,
        ),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)


def get_client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def get_caller(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> CallerIdentity:
    """
    Resolve the authenticated caller from the Authorization header.

    Raises:
        UnauthorizedError: Missing or invalid bearer token
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise UnauthorizedError("Unauthorized")
    token = authorization[7:].strip()
    return await get_services(request).auth.verify(token)
