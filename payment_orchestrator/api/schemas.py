"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from payment_orchestrator.core.state_machine import OrderStatus, PaymentStatus


class ConfirmPaymentRequest(BaseModel):
    """
    Request schema for confirming a payment.

    Fields are optional so that missing values reach the orchestrator. Types
    are strict: "39000" or 39000.5 is rejected rather than coerced, and the
    payments router reports the rejection as an INVALID_REQUEST outcome.
    """

    payment_key: Optional[StrictStr] = Field(
        default=None, alias="paymentKey", description="Gateway payment key from the success redirect"
    )
    order_id: Optional[StrictStr] = Field(default=None, alias="orderId", description="Order identifier")
    amount: Optional[StrictInt] = Field(default=None, description="Amount in minor units")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "paymentKey": "tgen_20250106120000abcDE",
                    "orderId": "ORD-20250106-0001",
                    "amount": 39000,
                }
            ]
        },
    )


class ConfirmPaymentResponse(BaseModel):
    """Response schema for payment confirmation."""

    outcome: str = Field(..., description="Confirmation outcome")
    order_id: Optional[str] = Field(default=None, description="Order identifier")
    order_status: Optional[OrderStatus] = Field(default=None, description="Order status")
    payment_status: Optional[PaymentStatus] = Field(default=None, description="Payment status")
    payment_key: Optional[str] = Field(default=None, description="Recorded payment key")
    method: Optional[str] = Field(default=None, description="Payment method reported by the gateway")
    error_code: Optional[str] = Field(default=None, description="Error code for failed outcomes")
    error_message: Optional[str] = Field(default=None, description="Error message")
    secondary_synced: Optional[bool] = Field(
        default=None, description="Whether the order-management backend was updated"
    )
    reversal_attempted: bool = Field(default=False, description="Automatic reversal attempted")
    reversal_succeeded: Optional[bool] = Field(default=None, description="Automatic reversal result")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "outcome": "CONFIRMED",
                    "order_id": "ORD-20250106-0001",
                    "order_status": "PAID",
                    "payment_status": "COMPLETED",
                    "payment_key": "tgen_20250106120000abcDE",
                    "method": "CARD",
                    "secondary_synced": True,
                }
            ]
        }
    }


class CancelOrderRequest(BaseModel):
    """Request schema for canceling an order."""

    reason: Optional[str] = Field(default=None, max_length=200, description="Cancellation reason")


class CancelOrderResponse(BaseModel):
    """Response schema for order cancellation."""

    outcome: str = Field(..., description="Cancellation outcome")
    order_id: str = Field(..., description="Order identifier")
    order_status: Optional[OrderStatus] = Field(default=None, description="Order status")
    payment_status: Optional[PaymentStatus] = Field(default=None, description="Payment status")
    reason: Optional[str] = Field(default=None, description="Rejection reason")
    message: Optional[str] = Field(default=None, description="Details")
    gateway_reversed: bool = Field(default=False, description="Payment reversed at the gateway")


class PaymentFailureRequest(BaseModel):
    """Checkout failure reported by the gateway fail redirect."""

    code: Optional[str] = Field(default=None, description="Gateway failure code")
    message: Optional[str] = Field(default=None, description="Gateway failure message")


class PaymentFailureResponse(BaseModel):
    order_id: str = Field(..., description="Order identifier")
    applied: bool = Field(..., description="Whether the order was moved to FAILED")


class OrderItemResponse(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: int


class PaymentResponse(BaseModel):
    status: PaymentStatus
    payment_key: Optional[str] = None
    method: Optional[str] = None
    approved_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    """Response schema for order lookup."""

    id: str = Field(..., description="Order identifier")
    user_id: Optional[str] = Field(default=None, description="Owner")
    status: OrderStatus = Field(..., description="Order status")
    total_amount: int = Field(..., description="Total in minor units")
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = Field(default_factory=list)
    payment: Optional[PaymentResponse] = None


class UpdateOrderStatusRequest(BaseModel):
    """Request schema for fulfillment status changes."""

    status: OrderStatus = Field(..., description="Target status (SHIPPING or COMPLETED)")


class OutboxRelayResponse(BaseModel):
    published: int = Field(..., description="Events delivered in this batch")
    pending: int = Field(..., description="Events still waiting")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    message: Optional[str] = Field(default=None, description="Status message")
    gateway_mode: Optional[str] = Field(default=None, description="Gateway environment")
    secondary_sync_enabled: Optional[bool] = Field(default=None, description="Backend sync on")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
