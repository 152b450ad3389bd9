"""Database package for the fulfillment service."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    Address,
    Base,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Shipment,
    ShipmentStatus,
    Variant,
    WebhookEvent,
)
from .store import OrderStateStore

__all__ = [
    "Address",
    "Base",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderStateStore",
    "Payment",
    "PaymentStatus",
    "Shipment",
    "ShipmentStatus",
    "Variant",
    "WebhookEvent",
    "close_db",
    "get_session_factory",
    "init_db",
]
