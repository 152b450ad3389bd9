"""External provider integrations."""
from .auth import CallerIdentity, HttpAuthVerifier
from .barion_client import BarionClient, PaymentState, StartedPayment, map_payment_state
from .billingo_client import BillingoClient, BillingoDocument
from .dpd_client import BookedParcel, DPDClient
from .errors import ProviderError, ProviderErrorDetail, ProviderUnavailableError
from .packeta_client import PacketaClient

__all__ = [
    "BarionClient",
    "BillingoClient",
    "BillingoDocument",
    "BookedParcel",
    "CallerIdentity",
    "DPDClient",
    "HttpAuthVerifier",
    "PacketaClient",
    "PaymentState",
    "ProviderError",
    "ProviderErrorDetail",
    "ProviderUnavailableError",
    "StartedPayment",
    "map_payment_state",
]
