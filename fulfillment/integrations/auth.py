"""
Bearer token verification against a GoTrue-compatible identity service.

Only verification is in scope; user management lives elsewhere.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from fulfillment.core.errors import UnauthorizedError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller, used as the rate limit client id."""

    user_id: str
    email: Optional[str] = None


class HttpAuthVerifier:
    """Resolves a bearer token through ``GET {auth_url}/user``."""

    def __init__(
        self,
        auth_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.auth_url = auth_url.rstrip("/")
        self.api_key = api_key
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def verify(self, bearer: Optional[str]) -> CallerIdentity:
        """
        Verify a bearer token.

        Raises:
            UnauthorizedError: Missing, invalid or unverifiable token
        """
        if not bearer:
            raise UnauthorizedError("Unauthorized")

        headers = {"Authorization": f"Bearer {bearer}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            response = await self._client.get(f"{self.auth_url}/user", headers=headers)
        except httpx.HTTPError as e:
            logger.error("auth_verifier_unreachable", error=str(e))
            raise UnauthorizedError("Unauthorized") from e

        if response.status_code != 200:
            logger.warning("auth_token_rejected", status_code=response.status_code)
            raise UnauthorizedError("Unauthorized")

        try:
            user = response.json()
        except ValueError as e:
            raise UnauthorizedError("Unauthorized") from e

        if not isinstance(user, dict) or not user.get("id"):
            raise UnauthorizedError("Unauthorized")

        return CallerIdentity(user_id=str(user["id"]), email=user.get("email"))
