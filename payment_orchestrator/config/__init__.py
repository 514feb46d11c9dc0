"""Configuration package for the payment orchestrator."""
from .settings import GatewayConfig, Settings, get_settings

__all__ = ["GatewayConfig", "Settings", "get_settings"]
