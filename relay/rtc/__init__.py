"""
WebRTC signalling data types.
"""

from __future__ import annotations

from .webrtc import Channel, IceCandidate, SessionDescription, SessionState, SignalEvent

__all__ = ["Channel", "IceCandidate", "SessionDescription", "SessionState", "SignalEvent"]
