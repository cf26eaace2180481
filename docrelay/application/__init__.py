"""Application services."""

from .relay import RelayService, configure_relay_service, get_relay_service, reset_relay_state

__all__ = [
    "RelayService",
    "configure_relay_service",
    "get_relay_service",
    "reset_relay_state",
]
