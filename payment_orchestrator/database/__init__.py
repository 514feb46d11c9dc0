"""Database package for the order/payment store."""
from .connection import close_db, get_session_factory, init_db
from .models import Base, Order, OrderItem, OutboxEvent, Payment, PaymentEvent
from .store import OrderAggregate, OrderPaymentStore, StoreError

__all__ = [
    "Base",
    "Order",
    "OrderItem",
    "Payment",
    "PaymentEvent",
    "OutboxEvent",
    "OrderAggregate",
    "OrderPaymentStore",
    "StoreError",
    "close_db",
    "get_session_factory",
    "init_db",
]
