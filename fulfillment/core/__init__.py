"""Orchestration core: rate limiting, payment, invoicing and shipment steps."""
