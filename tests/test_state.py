"""Tests covering the relay state container used by the API layer."""

from __future__ import annotations

import pytest

from relay.api.state import RelayState
from relay.errors import MalformedPayload, UnknownChannel
from relay.rtc.webrtc import Channel, IceCandidate, SessionDescription, SignalEvent


def test_offer_scenario_delivers_once() -> None:
    state = RelayState()
    received = []

    subscription_id = state.subscribe("s1", "offer", received.append)
    state.set_offer("s1", SessionDescription(sdp="A", type="offer"))
    state.set_offer("s1", SessionDescription(sdp="A", type="offer"))

    assert [event.to_dict() for event in received] == [
        {"channel": "offer", "payload": {"sdp": "A", "type": "offer"}}
    ]
    assert state.unsubscribe(subscription_id) is True
    assert state.unsubscribe(subscription_id) is False


def test_clear_session_resets_everything() -> None:
    state = RelayState()
    received: list[SignalEvent] = []
    state.subscribe("s1", Channel.ANSWER, received.append)
    state.set_offer("s1", SessionDescription(sdp="A", type="offer"))
    state.set_answer("s1", SessionDescription(sdp="B", type="answer"))
    state.add_ice_candidate("s1", IceCandidate(candidate="c1"))

    assert state.session_exists("s1") is True
    assert state.clear_session("s1") is True

    assert state.session_exists("s1") is False
    assert state.snapshot("s1").to_dict() == {"offer": None, "answer": None, "iceCandidates": []}
    assert state.health() == {
        "sessions": 0,
        "subscriptions": 0,
        "detectors": 0,
        "subscribedSessions": 0,
    }

    state.set_answer("s1", SessionDescription(sdp="C", type="answer"))
    assert [event.payload.sdp for event in received] == ["B"]


def test_candidate_indices_grow() -> None:
    state = RelayState()
    indices = [state.add_ice_candidate("s1", IceCandidate(candidate=f"c{n}")) for n in range(3)]

    assert indices == [0, 1, 2]
    assert [item["candidate"] for item in state.snapshot("s1").to_dict()["iceCandidates"]] == [
        "c0",
        "c1",
        "c2",
    ]


def test_shutdown_releases_subscriptions() -> None:
    state = RelayState()
    state.subscribe("s1", Channel.OFFER, lambda event: None)
    state.subscribe("s2", Channel.ICE_CANDIDATES, lambda event: None)

    state.shutdown()

    assert state.registry.subscription_count() == 0
    assert state.store.watcher_count() == 0


def test_channel_parsing() -> None:
    assert Channel.parse("iceCandidates") is Channel.ICE_CANDIDATES
    assert Channel.parse("ICECANDIDATES") is Channel.ICE_CANDIDATES
    assert Channel.parse(Channel.ANSWER) is Channel.ANSWER
    assert Channel.ICE_CANDIDATES.frame_type == "iceCandidate"
    assert Channel.OFFER.frame_type == "offer"
    with pytest.raises(UnknownChannel):
        Channel.parse(None)


def test_payload_validation() -> None:
    with pytest.raises(MalformedPayload):
        SessionDescription(sdp="A", type="pranswer")
    with pytest.raises(MalformedPayload):
        IceCandidate(candidate=None)  # type: ignore[arg-type]

    candidate = IceCandidate(candidate="c1", sdp_mid="audio", sdp_mline_index=1)
    assert candidate.to_dict() == {"candidate": "c1", "sdpMid": "audio", "sdpMLineIndex": 1}
    assert candidate == IceCandidate(candidate="c1", sdp_mid="audio", sdp_mline_index=1)
