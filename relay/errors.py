"""
Exceptions shared by the signalling core and its transports.
"""

from __future__ import annotations


class SignallingError(RuntimeError):
    """Base class for relay errors."""


class MalformedPayload(SignallingError):
    """Raised when a mutation body or socket message misses required fields."""


class UnknownChannel(MalformedPayload):
    """Raised when a subscription names a channel the relay does not serve."""


class DeliveryFailure(SignallingError):
    """Raised by a delivery callback that could not hand an event to its connection."""


__all__ = ["DeliveryFailure", "MalformedPayload", "SignallingError", "UnknownChannel"]
