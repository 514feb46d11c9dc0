"""Order-payment confirmation and cancellation orchestrator."""

__version__ = "1.0.0"
