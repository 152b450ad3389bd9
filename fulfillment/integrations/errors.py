"""Provider-agnostic representation of upstream failures."""
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from fulfillment.core.errors import FulfillmentError


@dataclass(frozen=True)
class ProviderErrorDetail:
    """One error reported by a provider, normalized from its own JSON shape."""

    code: str
    title: str
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class ProviderError(FulfillmentError):
    """
    Raised when a payment, invoicing or carrier provider rejects a request.

    The orchestration layer only ever looks at ``provider``, ``errors`` and
    ``status_code``; the raw payload is kept for logging.
    """

    status_code = 400

    def __init__(
        self,
        provider: str,
        message: str,
        errors: Optional[List[ProviderErrorDetail]] = None,
        upstream_status: Optional[int] = None,
        payload: Any = None,
    ):
        self.provider = provider
        self.errors = errors or []
        self.upstream_status = upstream_status
        self.payload = payload
        super().__init__(message, details=[e.to_dict() for e in self.errors])


class ProviderUnavailableError(ProviderError):
    """Raised when a provider cannot be reached or times out."""

    status_code = 502
