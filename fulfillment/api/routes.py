"""
API routes for order fulfillment.

Domain errors propagate to the exception handlers registered in
``fulfillment.api.main``; handlers here only translate HTTP to service calls.
"""
import json
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from fulfillment.core.errors import ValidationFailedError
from fulfillment.integrations.auth import CallerIdentity

from .dependencies import ServiceContainer, get_caller, get_client_ip, get_services
from .schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    CreateShipmentRequest,
    ErrorResponse,
    InvoiceResponse,
    OrderStepRequest,
    PickupPointsResponse,
    ShipmentResponse,
    TrackingResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
invoice_router = APIRouter(prefix="/invoices", tags=["invoices"])
shipment_router = APIRouter(prefix="/shipments", tags=["shipments"])
monitoring_router = APIRouter(tags=["monitoring"])


def error_responses(*status_codes: int) -> Dict[int | str, Dict[str, Any]]:
    """OpenAPI entries for the error envelope under each status code."""
    return {code: {"model": ErrorResponse} for code in status_codes}


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    responses=error_responses(400, 401, 429, 502, 503),
    summary="Start a payment",
    description="Open a hosted checkout session for an order",
)
async def initiate_payment(
    request: CreatePaymentRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Start a gateway payment. No payment is recorded if the gateway rejects it."""
    logger.info(
        "api_initiate_payment_request",
        order_id=request.order_id,
        amount=str(request.amount),
        currency=request.currency,
    )
    result = await services.payment_initiator.initiate(request.to_domain(), caller)
    return result.to_dict()


async def _read_callback_body(request: Request) -> Dict[str, Any]:
    """Gateway callbacks arrive as JSON or as a urlencoded form."""
    raw = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        try:
            return dict(parse_qsl(raw.decode("utf-8")))
        except UnicodeDecodeError as e:
            raise ValidationFailedError("Invalid callback body") from e
    try:
        body = json.loads(raw or b"{}")
    except ValueError as e:
        raise ValidationFailedError("Invalid callback body") from e
    if not isinstance(body, dict):
        raise ValidationFailedError("Invalid callback body")
    return body


@webhook_router.post(
    "/barion",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses=error_responses(400, 404, 429, 502),
    summary="Barion payment callback",
)
async def barion_webhook(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle a Barion payment status callback.

    The payment state is fetched from Barion; the callback body is only used
    for its PaymentId.
    """
    payload = await _read_callback_body(request)
    return await services.payment_confirmation.handle(payload, get_client_ip(request))


@invoice_router.post(
    "",
    response_model=InvoiceResponse,
    response_model_exclude_none=True,
    responses=error_responses(400, 401, 404, 409, 429, 502),
    summary="Generate invoice",
    description="Create the invoice of a paid order; returns the existing one if present",
)
async def generate_invoice(
    request: OrderStepRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.invoice_generator.generate(request.order_id, caller)
    return result.to_dict()


@shipment_router.post(
    "",
    response_model=ShipmentResponse,
    response_model_exclude_none=True,
    responses=error_responses(400, 401, 404, 409, 429),
    summary="Create shipment",
    description="Book the shipment of a paid order, with a placeholder if the carrier fails",
)
async def create_shipment(
    request: CreateShipmentRequest,
    caller: CallerIdentity = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.shipment_creator.create(
        request.order_id,
        caller,
        carrier=request.carrier,
        pickup_point_id=request.pickup_point_id,
    )
    return result.to_dict()


@shipment_router.get(
    "/track",
    response_model=TrackingResponse,
    responses=error_responses(400, 404),
    summary="Track shipment",
)
async def track_shipment(
    tracking: Optional[str] = Query(default=None, description="Tracking number"),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return await services.shipment_tracker.track(tracking)


@shipment_router.get(
    "/pickup-points",
    response_model=PickupPointsResponse,
    responses=error_responses(400, 502),
    summary="List pickup points",
)
async def pickup_points(
    carrier: str = Query(default="packeta", description="Carrier code"),
    country: str = Query(default="HU", min_length=2, max_length=2, description="Country code"),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    points = await services.shipment_tracker.pickup_points(carrier.lower(), country)
    return {"success": True, "pickupPoints": points}


@monitoring_router.get(
    "/health",
    summary="Health check",
    description="Check overall system health",
)
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Comprehensive health check endpoint."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Kubernetes liveness probe",
)
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Kubernetes readiness probe",
)
async def readiness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe - checks if app can serve traffic."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Prometheus metrics endpoint",
)
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
