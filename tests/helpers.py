"""Test doubles shared by the test modules."""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from fulfillment.integrations.barion_client import BarionClient
from fulfillment.integrations.billingo_client import BillingoClient
from fulfillment.integrations.dpd_client import DPDClient
from fulfillment.integrations.packeta_client import PacketaClient

Handler = Callable[[httpx.Request], Union[httpx.Response, Awaitable[httpx.Response]]]


class FakeClock:
    """Settable time source for the rate limiter and placeholder numbers."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(httpx.AsyncBaseTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Handler):
        self.requests: List[httpx.Request] = []
        self._transport = httpx.MockTransport(handler)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return await self._transport.handle_async_request(request)

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]


def json_response(status_code: int, body: Optional[Dict[str, Any]] = None) -> httpx.Response:
    return httpx.Response(status_code, json=body if body is not None else {})


def make_barion(handler: Handler) -> tuple[BarionClient, RecordingTransport]:
    transport = RecordingTransport(handler)
    client = BarionClient(
        pos_key="test-pos-key",
        payee_email="shop@example.hu",
        base_url="https://barion.test/v2",
        http_client=httpx.AsyncClient(transport=transport),
    )
    return client, transport


def make_billingo(handler: Handler) -> tuple[BillingoClient, RecordingTransport]:
    transport = RecordingTransport(handler)
    client = BillingoClient(
        api_key="test-billingo-key",
        base_url="https://billingo.test/v3",
        http_client=httpx.AsyncClient(transport=transport),
    )
    return client, transport


def make_dpd(handler: Handler) -> tuple[DPDClient, RecordingTransport]:
    transport = RecordingTransport(handler)
    client = DPDClient(
        api_key="test-dpd-key",
        base_url="https://dpd.test/v1",
        http_client=httpx.AsyncClient(transport=transport),
    )
    return client, transport


def make_packeta(handler: Handler) -> tuple[PacketaClient, RecordingTransport]:
    transport = RecordingTransport(handler)
    client = PacketaClient(
        api_key="test-packeta-key",
        api_password="test-packeta-password",
        base_url="https://packeta.test/api/rest",
        branch_url="https://packeta.test/api/v4",
        http_client=httpx.AsyncClient(transport=transport),
    )
    return client, transport
