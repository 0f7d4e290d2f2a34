"""
Signalling artefacts exchanged between peers.

The relay never looks inside SDP or candidate strings; these containers only
carry them around and compare them for equality.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from ..errors import MalformedPayload, UnknownChannel

DESCRIPTION_TYPES = frozenset({"offer", "answer"})


class Channel(str, Enum):
    """Independently subscribable state streams of a session."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATES = "iceCandidates"

    @classmethod
    def parse(cls, value: object) -> "Channel":
        if isinstance(value, Channel):
            return value
        text = str(value or "").strip()
        for channel in cls:
            if text == channel.value or text.lower() == channel.value.lower():
                return channel
        raise UnknownChannel(f"Unsupported stream type '{value}'")

    @property
    def frame_type(self) -> str:
        """Message ``type`` used for this channel's events on a WebSocket."""

        if self is Channel.ICE_CANDIDATES:
            return "iceCandidate"
        return self.value


@dataclass(frozen=True, slots=True)
class SessionDescription:
    """An SDP offer or answer."""

    sdp: str
    type: str = "offer"

    def __post_init__(self) -> None:
        if not isinstance(self.sdp, str):
            raise MalformedPayload("session description requires a string sdp")
        if self.type not in DESCRIPTION_TYPES:
            raise MalformedPayload(f"Unsupported session description type '{self.type}'")

    def to_dict(self) -> dict:
        return {"sdp": self.sdp, "type": self.type}


@dataclass(frozen=True, slots=True)
class IceCandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.candidate, str):
            raise MalformedPayload("ICE candidate requires a string candidate")

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


Payload = Union[SessionDescription, IceCandidate]


@dataclass(frozen=True, slots=True)
class SessionState:
    """Point-in-time view of one session."""

    offer: Optional[SessionDescription] = None
    answer: Optional[SessionDescription] = None
    candidates: Tuple[IceCandidate, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "offer": self.offer.to_dict() if self.offer else None,
            "answer": self.answer.to_dict() if self.answer else None,
            "iceCandidates": [candidate.to_dict() for candidate in self.candidates],
        }


@dataclass(frozen=True, slots=True)
class SignalEvent:
    """A single state transition delivered to a subscriber."""

    channel: Channel
    payload: Payload
    session_key: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"channel": self.channel.value, "payload": self.payload.to_dict()}


__all__ = [
    "Channel",
    "IceCandidate",
    "Payload",
    "SessionDescription",
    "SessionState",
    "SignalEvent",
]
