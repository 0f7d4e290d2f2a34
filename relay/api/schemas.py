"""
Pydantic schemas mirroring the REST contract.

Bodies are accepted either wrapped as ``{"value": {...}}`` or flat, and the
session key may come from the path or from a ``userId`` field.  Unknown fields
are ignored.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator, validator

from ..rtc.webrtc import IceCandidate, SessionDescription


def _unwrap_value(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    value = data.get("value")
    if isinstance(value, dict):
        merged = {key: item for key, item in data.items() if key != "value"}
        merged.update(value)
        return merged
    return data


class SessionKeyModel(BaseModel):
    user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userId", "user_id", "sessionKey", "session_key"),
    )
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @validator("user_id", pre=True)
    def _normalise_user_id(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        result = str(value).strip()
        return result or None

    def resolve_key(self, path_key: Optional[str] = None) -> Optional[str]:
        return path_key or self.user_id


class SessionDescriptionRequest(SessionKeyModel):
    sdp: str
    type: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, data: Any) -> Any:
        return _unwrap_value(data)

    @validator("type", pre=True)
    def _normalise_type(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        result = str(value).strip().lower()
        if result not in {"offer", "answer"}:
            raise ValueError("type must be 'offer' or 'answer'")
        return result

    def to_description(self, default_type: str) -> SessionDescription:
        return SessionDescription(sdp=self.sdp, type=self.type or default_type)


class IceCandidateRequest(SessionKeyModel):
    candidate: str
    sdp_mid: Optional[str] = Field(default=None, validation_alias=AliasChoices("sdpMid", "sdp_mid"))
    sdp_mline_index: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("sdpMLineIndex", "sdpMlineIndex", "sdp_mline_index"),
    )

    @model_validator(mode="before")
    @classmethod
    def _unwrap(cls, data: Any) -> Any:
        return _unwrap_value(data)

    def to_candidate(self) -> IceCandidate:
        return IceCandidate(
            candidate=self.candidate,
            sdp_mid=self.sdp_mid,
            sdp_mline_index=self.sdp_mline_index,
        )


class RoomExistsResponse(BaseModel):
    exists: bool


class SessionStateModel(BaseModel):
    sessionKey: str
    exists: bool
    offer: Optional[dict] = None
    answer: Optional[dict] = None
    iceCandidates: list = Field(default_factory=list)


class HealthModel(BaseModel):
    status: str = "ok"
    sessions: int = 0
    subscriptions: int = 0
    detectors: int = 0
    subscribedSessions: int = 0
