"""HTTP and WebSocket surface of the relay."""

from .server import create_app
from .state import RelayState

__all__ = ["RelayState", "create_app"]
