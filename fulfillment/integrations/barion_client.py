"""
Barion payment gateway client.

Implements:
- Payment/Start (hosted checkout session for an order)
- Payment/GetPaymentState (authoritative status lookup for callbacks)
- Normalization of Barion's ``Errors`` list into ProviderErrorDetail
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog

from fulfillment.database.models import PaymentStatus
from fulfillment.integrations.base import ProviderClient
from fulfillment.integrations.errors import ProviderError, ProviderErrorDetail

logger = structlog.get_logger(__name__)

# Barion payment states and how the order sees them. States not listed
# (Prepared, Started, InProgress, Reserved, ...) leave the payment pending.
BARION_STATUS_MAP: Dict[str, str] = {
    "Succeeded": PaymentStatus.PAID,
    "Failed": PaymentStatus.FAILED,
    "Canceled": PaymentStatus.FAILED,
    "Expired": PaymentStatus.FAILED,
}


def map_payment_state(barion_status: Optional[str]) -> str:
    """Map a Barion payment state onto the internal payment status."""
    return BARION_STATUS_MAP.get(barion_status or "", PaymentStatus.PENDING)


@dataclass
class StartedPayment:
    """Result of a successful Payment/Start call."""

    payment_id: str
    gateway_url: str
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentState:
    """Result of Payment/GetPaymentState."""

    payment_id: str
    status: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def payment_status(self) -> str:
        return map_payment_state(self.status)


class BarionClient(ProviderClient):
    """
    Client for the Barion v2 REST API.

    Barion reports request problems either through a non-2xx status or
    through a non-empty ``Errors`` list on a 200 response; both surface as
    ProviderError with the provider's error list verbatim.
    """

    provider = "barion"

    def __init__(
        self,
        pos_key: str,
        payee_email: str,
        base_url: str = "https://api.test.barion.com/v2",
        locale: str = "hu-HU",
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            http_client=http_client,
        )
        self.pos_key = pos_key
        self.payee_email = payee_email
        self.locale = locale

    def parse_errors(self, payload: Any) -> List[ProviderErrorDetail]:
        if not isinstance(payload, dict):
            return []
        return [
            ProviderErrorDetail(
                code=str(error.get("ErrorCode", "")),
                title=str(error.get("Title", "")),
                detail=str(error.get("Description", "")),
            )
            for error in payload.get("Errors") or []
        ]

    def _raise_for_errors(self, payload: Any, operation: str) -> None:
        errors = self.parse_errors(payload)
        if errors:
            logger.error(
                "barion_errors_returned",
                operation=operation,
                errors=[e.to_dict() for e in errors],
            )
            raise ProviderError(
                self.provider,
                f"Barion rejected {operation}",
                errors=errors,
                payload=payload,
            )

    async def start_payment(
        self,
        payment_request_id: str,
        pos_transaction_id: str,
        amount: Decimal,
        currency: str,
        payer_email: str,
        items: List[Dict[str, Any]],
        redirect_url: str,
        callback_url: str,
    ) -> StartedPayment:
        """
        Open a hosted checkout session.

        Args:
            payment_request_id: Idempotency key for the gateway (the order id)
            pos_transaction_id: Shop-side transaction reference
            amount: Transaction total
            currency: ISO currency code
            payer_email: Pre-filled payer hint
            items: Line items in Barion's ``Items`` shape
            redirect_url: Where the payer lands after checkout
            callback_url: Where Barion posts status changes

        Returns:
            StartedPayment: The gateway's payment id and hosted checkout URL

        Raises:
            ProviderError: If Barion rejects the request
            ProviderUnavailableError: If Barion cannot be reached
        """
        request = {
            "POSKey": self.pos_key,
            "PaymentType": "Immediate",
            "GuestCheckOut": False,
            "FundingSources": ["All"],
            "PaymentRequestId": payment_request_id,
            "PayerHint": payer_email,
            "Locale": self.locale,
            "Currency": currency,
            "RedirectUrl": redirect_url,
            "CallbackUrl": callback_url,
            "Transactions": [
                {
                    "POSTransactionId": pos_transaction_id,
                    "Payee": self.payee_email,
                    "Total": float(amount),
                    "Items": items,
                }
            ],
        }

        payload = await self._request("POST", "/Payment/Start", "start_payment", json=request)
        self._raise_for_errors(payload, "start_payment")

        if not payload.get("PaymentId"):
            raise ProviderError(
                self.provider,
                "Barion response is missing PaymentId",
                errors=[ProviderErrorDetail(code="malformed_response", title="Missing PaymentId")],
                payload=payload,
            )

        return StartedPayment(
            payment_id=payload["PaymentId"],
            gateway_url=payload.get("GatewayUrl", ""),
            status=payload.get("Status"),
            raw=payload,
        )

    async def get_payment_state(self, payment_id: str) -> PaymentState:
        """
        Fetch the gateway's current view of a payment.

        Raises:
            ProviderError: If Barion rejects the lookup
            ProviderUnavailableError: If Barion cannot be reached
        """
        payload = await self._request(
            "POST",
            "/Payment/GetPaymentState",
            "get_payment_state",
            json={"POSKey": self.pos_key, "PaymentId": payment_id},
        )
        self._raise_for_errors(payload, "get_payment_state")

        return PaymentState(
            payment_id=payload.get("PaymentId", payment_id),
            status=payload.get("Status"),
            raw=payload,
        )
