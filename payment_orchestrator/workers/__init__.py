"""Background workers run as separate processes."""
from .outbox_publisher import start_outbox_publisher

__all__ = ["start_outbox_publisher"]
