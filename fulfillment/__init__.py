"""Post-checkout order fulfillment: payment, invoicing and shipment orchestration."""

__version__ = "0.1.0"
