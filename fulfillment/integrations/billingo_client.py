"""Billingo v3 invoicing client."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from fulfillment.integrations.base import ProviderClient
from fulfillment.integrations.errors import ProviderError, ProviderErrorDetail


@dataclass
class BillingoDocument:
    document_id: str
    invoice_number: str
    raw: Dict[str, Any] = field(default_factory=dict)


class BillingoClient(ProviderClient):
    """Creates partners and invoice documents."""

    provider = "billingo"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.billingo.hu/v3",
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            base_url,
            timeout=timeout,
            headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
            http_client=http_client,
        )

    def parse_errors(self, payload: Any) -> List[ProviderErrorDetail]:
        # Billingo answers with {"error": {"message": ...}} or a validation
        # body {"message": ..., "errors": [{"field": ..., "message": ...}]}
        if not isinstance(payload, dict):
            return []
        details = [
            ProviderErrorDetail(
                code=str(item.get("field", "validation")),
                title=str(item.get("message", "")),
            )
            for item in payload.get("errors") or []
            if isinstance(item, dict)
        ]
        if details:
            return details
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return [ProviderErrorDetail(code="error", title=str(error["message"]))]
        return super().parse_errors(payload)

    def download_url(self, document_id: str) -> str:
        return f"{self.base_url}/documents/{document_id}/download"

    async def create_partner(self, partner: Dict[str, Any]) -> Union[int, str]:
        """
        Create an invoice partner.

        Returns:
            Union[int, str]: Billingo partner id, as the API returned it
        """
        payload = await self._request("POST", "/partners", "create_partner", json=partner)
        partner_id = payload.get("id") if isinstance(payload, dict) else None
        if partner_id is None:
            raise ProviderError(
                self.provider,
                "Billingo partner response is missing id",
                errors=[ProviderErrorDetail(code="malformed_response", title="Missing partner id")],
                payload=payload,
            )
        return partner_id

    async def create_document(self, document: Dict[str, Any]) -> BillingoDocument:
        """
        Create an invoice document.

        Raises:
            ProviderError: If Billingo rejects the document
            ProviderUnavailableError: If Billingo cannot be reached
        """
        payload = await self._request("POST", "/documents", "create_document", json=document)
        if not isinstance(payload, dict) or not payload.get("invoice_number"):
            raise ProviderError(
                self.provider,
                "Billingo document response is missing invoice_number",
                errors=[
                    ProviderErrorDetail(code="malformed_response", title="Missing invoice number")
                ],
                payload=payload,
            )
        return BillingoDocument(
            document_id=str(payload.get("id", "")),
            invoice_number=str(payload["invoice_number"]),
            raw=payload,
        )
