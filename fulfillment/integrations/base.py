"""
Shared HTTP plumbing for provider clients.

Implements:
- One pooled httpx.AsyncClient per provider, injectable for tests
- Transport timeout with no retry loop (nothing is retried inside the core)
- Uniform mapping of transport failures to ProviderUnavailableError
- Per-call latency and outcome metrics
"""
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from fulfillment.integrations.errors import (
    ProviderError,
    ProviderErrorDetail,
    ProviderUnavailableError,
)
from fulfillment.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProviderClient:
    """Base class for the payment, invoicing and carrier clients."""

    provider: str = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        headers: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._headers = headers or {}

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def parse_errors(self, payload: Any) -> List[ProviderErrorDetail]:
        """Normalize the provider's error body. Overridden per provider."""
        if isinstance(payload, dict) and payload.get("message"):
            return [ProviderErrorDetail(code="error", title=str(payload["message"]))]
        return []

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send one request and return the decoded JSON body.

        ``path`` is joined to the base URL unless it is already absolute.

        Raises:
            ProviderUnavailableError: Transport failure or timeout
            ProviderError: Non-2xx response
        """
        url = path if path.startswith(("http://", "https://")) else f"{self.base_url}{path}"
        start = time.perf_counter()

        try:
            response = await self._client.request(
                method, url, json=json, params=params, headers=self._headers
            )
        except httpx.HTTPError as e:
            duration = time.perf_counter() - start
            metrics.record_provider_call(self.provider, operation, "unavailable", duration)
            logger.error(
                "provider_unreachable",
                provider=self.provider,
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderUnavailableError(
                self.provider,
                f"{self.provider} is unreachable: {type(e).__name__}",
                errors=[
                    ProviderErrorDetail(
                        code="unavailable", title="Provider unreachable", detail=str(e)
                    )
                ],
            ) from e

        duration = time.perf_counter() - start
        payload = self._decode(response)

        if response.is_error:
            metrics.record_provider_call(self.provider, operation, "rejected", duration)
            errors = self.parse_errors(payload) or [
                ProviderErrorDetail(
                    code=str(response.status_code),
                    title=response.reason_phrase or "Provider error",
                    detail=response.text[:500],
                )
            ]
            logger.error(
                "provider_request_rejected",
                provider=self.provider,
                operation=operation,
                status_code=response.status_code,
                errors=[e.to_dict() for e in errors],
            )
            raise ProviderError(
                self.provider,
                f"{self.provider} rejected {operation}",
                errors=errors,
                upstream_status=response.status_code,
                payload=payload,
            )

        metrics.record_provider_call(self.provider, operation, "ok", duration)
        logger.info(
            "provider_request_completed",
            provider=self.provider,
            operation=operation,
            duration_ms=round(duration * 1000, 2),
        )
        return payload

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}
