"""Exceptions raised by the order services."""


class OrderError(Exception):
    """Base exception for order processing errors."""

    pass


class OrderNotFoundError(OrderError):
    """Raised when the referenced order does not exist."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidTransitionError(OrderError):
    """Raised when a requested status change is not a legal edge."""

    pass
