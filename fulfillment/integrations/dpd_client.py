"""DPD parcel carrier client."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from fulfillment.integrations.base import ProviderClient
from fulfillment.integrations.errors import ProviderError, ProviderErrorDetail


@dataclass
class BookedParcel:
    tracking_number: str
    label_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class DPDClient(ProviderClient):
    """Books parcels with DPD and builds public tracking links."""

    provider = "dpd"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.dpd.hu/v1",
        service: str = "DPD Classic",
        tracking_url_template: str = (
            "https://tracking.dpd.hu/parcel-tracking?parcelNumber={tracking_number}"
        ),
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            http_client=http_client,
        )
        self.service = service
        self.tracking_url_template = tracking_url_template

    def parse_errors(self, payload: Any) -> List[ProviderErrorDetail]:
        if isinstance(payload, dict) and isinstance(payload.get("errors"), list):
            return [
                ProviderErrorDetail(
                    code=str(item.get("code", "error")),
                    title=str(item.get("message", "")),
                )
                for item in payload["errors"]
                if isinstance(item, dict)
            ]
        return super().parse_errors(payload)

    def tracking_url(self, tracking_number: str) -> str:
        return self.tracking_url_template.format(tracking_number=tracking_number)

    async def create_shipment(
        self,
        reference: str,
        recipient: Dict[str, Any],
        weight_kg: int,
        parcel_reference: str,
    ) -> BookedParcel:
        """
        Book a parcel.

        Raises:
            ProviderError: If DPD rejects the booking
            ProviderUnavailableError: If DPD cannot be reached
        """
        request = {
            "reference": reference,
            "recipient": recipient,
            "parcel": {"weight": weight_kg, "reference": parcel_reference},
            "service": self.service,
        }
        payload = await self._request("POST", "/shipment", "create_shipment", json=request)

        tracking_number = None
        if isinstance(payload, dict):
            tracking_number = payload.get("parcel_number") or payload.get("tracking_number")
        if not tracking_number:
            raise ProviderError(
                self.provider,
                "DPD response is missing a parcel number",
                errors=[ProviderErrorDetail(code="malformed_response", title="Missing parcel number")],
                payload=payload,
            )

        return BookedParcel(
            tracking_number=str(tracking_number),
            label_url=payload.get("label_url"),
            raw=payload,
        )
