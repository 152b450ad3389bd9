"""
Error taxonomy for the orchestration core.

Every error carries the HTTP-equivalent status it is surfaced with, so the
API layer renders them uniformly:

- client errors (400/401/429): bad input, unauthenticated caller, throttled
- precondition errors (400/404/409): order missing, not yet paid, step busy
- internal faults (5xx): backing services of the core itself are unavailable

Upstream provider failures live in ``fulfillment.integrations.errors``.
"""
from typing import Any, Dict, List, Optional


class FulfillmentError(Exception):
    """Base exception for orchestration errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[List[Dict[str, Any]]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or []
        if status_code is not None:
            self.status_code = status_code


class ValidationFailedError(FulfillmentError):
    """Raised when request input is malformed or out of range."""

    status_code = 400


class UnauthorizedError(FulfillmentError):
    """Raised when the caller's credential cannot be verified."""

    status_code = 401


class RateLimitExceededError(FulfillmentError):
    """Raised when a client exceeded its request budget for an operation."""

    status_code = 429


class OrderNotFoundError(FulfillmentError):
    """Raised when the referenced order does not exist. Not retryable."""

    status_code = 404


class OrderNotPaidError(FulfillmentError):
    """Raised when a step requires a paid order and payment has not confirmed."""

    status_code = 400


class PaymentNotFoundError(FulfillmentError):
    """Raised when a gateway callback references an unknown payment."""

    status_code = 404


class ShipmentNotFoundError(FulfillmentError):
    """Raised when no shipment matches a tracking number."""

    status_code = 404


class OperationInProgressError(FulfillmentError):
    """Raised when another invocation holds the claim for the same order step."""

    status_code = 409


class RateLimiterUnavailableError(FulfillmentError):
    """Raised when the rate limit backend cannot give a decision (fail-closed)."""

    status_code = 503
