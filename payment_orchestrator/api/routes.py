"""
API routes for payment confirmation, cancellation and order administration.
"""
from typing import Any, Callable, Coroutine, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_orchestrator.core.cancellation import CancellationOrchestrator
from payment_orchestrator.core.confirmation import ConfirmationOrchestrator
from payment_orchestrator.core.exceptions import InvalidTransitionError, OrderNotFoundError
from payment_orchestrator.core.fulfillment import FulfillmentService
from payment_orchestrator.core.outbox import OutboxRelay
from payment_orchestrator.core.results import (
    CancellationOutcome,
    CancellationRequest,
    CancellationResult,
    CancelRejectReason,
    ConfirmationOutcome,
    ConfirmationRequest,
    ConfirmationResult,
    Principal,
)
from payment_orchestrator.database.store import OrderAggregate, OrderPaymentStore
from payment_orchestrator.monitoring.health import HealthCheck

from .dependencies import (
    get_cancellation_orchestrator,
    get_confirmation_orchestrator,
    get_fulfillment_service,
    get_health_check,
    get_outbox_relay,
    get_principal,
    get_store,
    require_admin,
)
from .schemas import (
    CancelOrderRequest,
    CancelOrderResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    HealthCheckResponse,
    OrderItemResponse,
    OrderResponse,
    OutboxRelayResponse,
    PaymentFailureRequest,
    PaymentFailureResponse,
    PaymentResponse,
    UpdateOrderStatusRequest,
)

logger = structlog.get_logger(__name__)


class ConfirmationRoute(APIRoute):
    """
    Route that answers a malformed confirmation body with an INVALID_REQUEST
    outcome (400) instead of FastAPI's 422 detail body.
    """

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        handler = super().get_route_handler()

        async def route_handler(request: Request) -> Response:
            try:
                return await handler(request)
            except RequestValidationError as e:
                fields = sorted({str(error["loc"][-1]) for error in e.errors() if error.get("loc")})
                logger.info("api_confirm_payment_invalid_body", fields=fields)
                body = ConfirmPaymentResponse(
                    outcome=ConfirmationOutcome.INVALID_REQUEST.value,
                    error_code="MISSING_FIELDS",
                    error_message="paymentKey, orderId and a positive integer amount are required",
                )
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content=body.model_dump(mode="json"),
                )

        return route_handler


# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"], route_class=ConfirmationRoute)
order_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

_CONFIRMATION_STATUS = {
    ConfirmationOutcome.CONFIRMED: status.HTTP_200_OK,
    ConfirmationOutcome.CONFIRMED_WITHOUT_SECONDARY_SYNC: status.HTTP_200_OK,
    ConfirmationOutcome.ALREADY_CONFIRMED: status.HTTP_200_OK,
    ConfirmationOutcome.PAYMENT_NOT_COMPLETED: status.HTTP_400_BAD_REQUEST,
    ConfirmationOutcome.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    ConfirmationOutcome.GATEWAY_REJECTED: status.HTTP_402_PAYMENT_REQUIRED,
    ConfirmationOutcome.LOCAL_PERSIST_FAILED_AFTER_CAPTURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_INVALID_REQUEST_STATUS = {
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PAYMENT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ORDER_NOT_PAYABLE": status.HTTP_409_CONFLICT,
}

_CANCELLATION_STATUS = {
    CancellationOutcome.CANCELED: status.HTTP_200_OK,
    CancellationOutcome.ALREADY_CANCELED: status.HTTP_200_OK,
    CancellationOutcome.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    CancellationOutcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CancellationOutcome.WINDOW_EXPIRED: status.HTTP_409_CONFLICT,
    CancellationOutcome.CANCEL_REJECTED: status.HTTP_409_CONFLICT,
    CancellationOutcome.LOCAL_PERSIST_FAILED_AFTER_REVERSAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def confirmation_status_code(result: ConfirmationResult) -> int:
    """HTTP status for a confirmation result."""
    if result.outcome == ConfirmationOutcome.INVALID_REQUEST:
        return _INVALID_REQUEST_STATUS.get(result.error_code or "", status.HTTP_400_BAD_REQUEST)
    if (
        result.outcome == ConfirmationOutcome.GATEWAY_REJECTED
        and result.error_code == "GATEWAY_UNAVAILABLE"
    ):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return _CONFIRMATION_STATUS[result.outcome]


def cancellation_status_code(result: CancellationResult) -> int:
    """HTTP status for a cancellation result."""
    if (
        result.outcome == CancellationOutcome.CANCEL_REJECTED
        and result.reason == CancelRejectReason.GATEWAY_UNAVAILABLE
    ):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return _CANCELLATION_STATUS[result.outcome]


def _order_response(aggregate: OrderAggregate) -> OrderResponse:
    order, payment = aggregate.order, aggregate.payment
    return OrderResponse(
        id=order.id,
        user_id=order.user_id,
        status=order.status,
        total_amount=order.total_amount,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[
            OrderItemResponse(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in order.items
        ],
        payment=(
            PaymentResponse(
                status=payment.status,
                payment_key=payment.payment_key,
                method=payment.method,
                approved_at=payment.approved_at,
            )
            if payment is not None
            else None
        ),
    )


@payment_router.post(
    "/confirm",
    response_model=ConfirmPaymentResponse,
    summary="Confirm a payment",
    description="Capture an authorized payment and record it against its order",
)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    orchestrator: ConfirmationOrchestrator = Depends(get_confirmation_orchestrator),
) -> JSONResponse:
    """
    Confirm a payment.

    Idempotent: repeating the request for a recorded payment returns
    ALREADY_CONFIRMED without contacting the gateway.
    """
    logger.info("api_confirm_payment_request", order_id=request.order_id, amount=request.amount)

    result = await orchestrator.confirm(
        ConfirmationRequest(
            payment_key=request.payment_key,
            order_id=request.order_id,
            amount=request.amount,
        )
    )

    body = ConfirmPaymentResponse(
        outcome=result.outcome.value,
        order_id=result.order_id,
        order_status=result.order_status,
        payment_status=result.payment_status,
        payment_key=result.payment_key,
        method=result.method,
        error_code=result.error_code,
        error_message=result.error_message,
        secondary_synced=result.secondary_synced,
        reversal_attempted=result.reversal_attempted,
        reversal_succeeded=result.reversal_succeeded,
    )
    return JSONResponse(
        status_code=confirmation_status_code(result), content=body.model_dump(mode="json")
    )


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
    description="Retrieve an order with its line items and payment",
)
async def get_order(
    order_id: str,
    store: OrderPaymentStore = Depends(get_store),
) -> OrderResponse:
    """Get order by ID."""
    aggregate = await store.get_by_order_id(order_id)
    if aggregate is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return _order_response(aggregate)


@order_router.post(
    "/{order_id}/cancel",
    response_model=CancelOrderResponse,
    summary="Cancel an order",
    description="Cancel an order, reversing its payment at the gateway first",
)
async def cancel_order(
    order_id: str,
    request: CancelOrderRequest | None = None,
    principal: Principal = Depends(get_principal),
    orchestrator: CancellationOrchestrator = Depends(get_cancellation_orchestrator),
) -> JSONResponse:
    """Cancel an order on behalf of its owner or an administrator."""
    logger.info("api_cancel_order_request", order_id=order_id, user_id=principal.user_id)

    result = await orchestrator.cancel(
        CancellationRequest(
            order_id=order_id,
            principal=principal,
            reason=request.reason if request else None,
        )
    )

    body = CancelOrderResponse(
        outcome=result.outcome.value,
        order_id=result.order_id,
        order_status=result.order_status,
        payment_status=result.payment_status,
        reason=result.reason.value if result.reason else None,
        message=result.message,
        gateway_reversed=result.gateway_reversed,
    )
    return JSONResponse(
        status_code=cancellation_status_code(result), content=body.model_dump(mode="json")
    )


@order_router.post(
    "/{order_id}/payment-failure",
    response_model=PaymentFailureResponse,
    summary="Record a checkout failure",
    description="Mark a pending order and payment as FAILED after the gateway fail redirect",
)
async def record_payment_failure(
    order_id: str,
    request: PaymentFailureRequest,
    orchestrator: ConfirmationOrchestrator = Depends(get_confirmation_orchestrator),
) -> Dict[str, Any]:
    """Record a checkout failure."""
    try:
        applied = await orchestrator.record_failure(order_id, request.code, request.message)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return {"order_id": order_id, "applied": applied}


@admin_router.post(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Advance fulfillment status",
    description="Move a paid order to SHIPPING, or a shipping order to COMPLETED",
)
async def update_order_status(
    order_id: str,
    request: UpdateOrderStatusRequest,
    principal: Principal = Depends(require_admin),
    fulfillment: FulfillmentService = Depends(get_fulfillment_service),
    store: OrderPaymentStore = Depends(get_store),
) -> OrderResponse:
    """Advance an order's fulfillment status."""
    try:
        await fulfillment.advance(order_id, request.status, actor=principal.user_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    aggregate = await store.get_by_order_id(order_id)
    if aggregate is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return _order_response(aggregate)


@admin_router.post(
    "/outbox/relay",
    response_model=OutboxRelayResponse,
    summary="Relay outbox",
    description="Push one batch of pending order-management backend updates",
)
async def relay_outbox(
    principal: Principal = Depends(require_admin),
    relay: OutboxRelay = Depends(get_outbox_relay),
) -> Dict[str, Any]:
    """Run one outbox relay batch."""
    published = await relay.process_batch()
    pending = await relay.get_pending_count()
    logger.info("api_outbox_relay_completed", published=published, pending=pending)
    return {"published": published, "pending": pending}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
