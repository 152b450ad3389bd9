"""HTTP API for the fulfillment service."""
