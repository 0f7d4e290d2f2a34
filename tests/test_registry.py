"""Tests covering change detection and subscription fan-out."""

from __future__ import annotations

import threading
from typing import List

import pytest

from relay.detector import ChangeDetector, Subscription
from relay.errors import DeliveryFailure, UnknownChannel
from relay.registry import SubscriptionRegistry
from relay.rtc.webrtc import Channel, IceCandidate, SessionDescription, SignalEvent
from relay.store import SessionStore


class Recorder:
    def __init__(self) -> None:
        self.events: List[SignalEvent] = []

    def __call__(self, event: SignalEvent) -> None:
        self.events.append(event)

    @property
    def payloads(self) -> list:
        return [event.to_dict() for event in self.events]


def offer(sdp: str) -> SessionDescription:
    return SessionDescription(sdp=sdp, type="offer")


def candidate(name: str) -> IceCandidate:
    return IceCandidate(candidate=name, sdp_mid="0", sdp_mline_index=0)


def make_registry() -> SubscriptionRegistry:
    return SubscriptionRegistry(SessionStore())


def test_offer_change_is_delivered_once() -> None:
    registry = make_registry()
    recorder = Recorder()
    registry.register("s1", "offer", recorder)

    registry.store.set_offer("s1", offer("A"))
    assert recorder.payloads == [{"channel": "offer", "payload": {"sdp": "A", "type": "offer"}}]

    registry.store.set_offer("s1", offer("A"))
    assert len(recorder.events) == 1

    registry.store.set_offer("s1", offer("B"))
    assert [event.payload.sdp for event in recorder.events] == ["A", "B"]


def test_fan_out_shares_one_detector() -> None:
    registry = make_registry()
    recorders = [Recorder() for _ in range(3)]
    for recorder in recorders:
        registry.register("s1", Channel.OFFER, recorder)

    assert registry.detector_count() == 1
    assert registry.store.watcher_count() == 1

    registry.store.set_offer("s1", offer("A"))

    for recorder in recorders:
        assert recorder.payloads == [{"channel": "offer", "payload": {"sdp": "A", "type": "offer"}}]


def test_channels_are_independent() -> None:
    registry = make_registry()
    answers = Recorder()
    registry.register("s1", Channel.ANSWER, answers)

    registry.store.set_offer("s1", offer("A"))
    registry.store.append_candidate("s1", candidate("c1"))
    assert answers.events == []

    registry.store.set_answer("s1", SessionDescription(sdp="R", type="answer"))
    assert answers.payloads == [{"channel": "answer", "payload": {"sdp": "R", "type": "answer"}}]


def test_late_offer_subscriber_sees_no_history() -> None:
    registry = make_registry()
    registry.store.set_offer("s1", offer("A"))

    recorder = Recorder()
    registry.register("s1", Channel.OFFER, recorder)
    registry.store.set_offer("s1", offer("A"))

    assert recorder.events == []


def test_late_candidate_subscriber_replays_from_start() -> None:
    registry = make_registry()
    for name in ("c1", "c2", "c3"):
        registry.store.append_candidate("s1", candidate(name))

    recorder = Recorder()
    registry.register("s1", Channel.ICE_CANDIDATES, recorder)
    assert [event.payload.candidate for event in recorder.events] == ["c1", "c2", "c3"]

    registry.store.append_candidate("s1", candidate("c4"))
    assert [event.payload.candidate for event in recorder.events] == ["c1", "c2", "c3", "c4"]


def test_candidate_subscribers_joining_at_different_times() -> None:
    registry = make_registry()
    early = Recorder()
    registry.register("s1", Channel.ICE_CANDIDATES, early)
    registry.store.append_candidate("s1", candidate("c1"))

    late = Recorder()
    registry.register("s1", Channel.ICE_CANDIDATES, late)
    registry.store.append_candidate("s1", candidate("c2"))

    assert [event.payload.candidate for event in early.events] == ["c1", "c2"]
    assert [event.payload.candidate for event in late.events] == ["c1", "c2"]
    assert registry.detector_count() == 1


def test_unregister_is_idempotent_and_stops_detector() -> None:
    registry = make_registry()
    first, second = Recorder(), Recorder()
    first_id = registry.register("s1", Channel.OFFER, first)
    second_id = registry.register("s1", Channel.OFFER, second)

    assert registry.unregister(first_id) is True
    assert registry.unregister(first_id) is False
    assert registry.detector_count() == 1

    registry.store.set_offer("s1", offer("A"))
    assert first.events == []
    assert len(second.events) == 1

    assert registry.unregister(second_id) is True
    assert registry.unregister(second_id) is False
    assert registry.detector_count() == 0
    assert registry.store.watcher_count() == 0
    assert registry.subscription_count() == 0


def test_unknown_subscription_id_is_ignored() -> None:
    registry = make_registry()
    assert registry.unregister("missing") is False


def test_watch_only_session_leaves_no_slot_behind() -> None:
    registry = make_registry()
    subscription_id = registry.register("s1", Channel.ANSWER, Recorder())
    registry.unregister(subscription_id)

    assert registry.store._slots == {}  # type: ignore[attr-defined]


def test_failing_delivery_only_drops_that_subscriber() -> None:
    registry = make_registry()
    healthy = Recorder()
    closed: List[Subscription] = []

    def broken(event: SignalEvent) -> None:
        raise DeliveryFailure("socket gone")

    broken_id = registry.register("s1", Channel.OFFER, broken, on_close=closed.append)
    registry.register("s1", Channel.OFFER, healthy)

    registry.store.set_offer("s1", offer("A"))
    registry.store.set_offer("s1", offer("B"))

    assert [event.payload.sdp for event in healthy.events] == ["A", "B"]
    assert [subscription.id for subscription in closed] == [broken_id]
    assert registry.get(broken_id) is None
    assert registry.subscription_count("s1") == 1
    assert registry.unregister(broken_id) is False


def test_failing_last_subscriber_releases_detector() -> None:
    registry = make_registry()

    def broken(event: SignalEvent) -> None:
        raise DeliveryFailure("socket gone")

    registry.register("s1", Channel.OFFER, broken)
    registry.store.set_offer("s1", offer("A"))

    assert registry.detector_count() == 0
    assert registry.store.watcher_count() == 0


def test_clear_cascades_to_every_channel() -> None:
    registry = make_registry()
    store = registry.store
    closed: List[Subscription] = []
    recorders = {channel: Recorder() for channel in Channel}
    for channel, recorder in recorders.items():
        registry.register("s1", channel, recorder, on_close=closed.append)
    other = Recorder()
    registry.register("s2", Channel.OFFER, other)

    store.set_offer("s1", offer("A"))
    assert store.clear_session("s1") is True

    assert registry.subscription_count("s1") == 0
    assert sorted(subscription.channel.value for subscription in closed) == [
        "answer",
        "iceCandidates",
        "offer",
    ]
    assert registry.detector_count() == 1

    store.set_offer("s1", offer("B"))
    store.set_answer("s1", SessionDescription(sdp="R", type="answer"))
    store.append_candidate("s1", candidate("c1"))
    assert len(recorders[Channel.OFFER].events) == 1
    assert recorders[Channel.ANSWER].events == []
    assert recorders[Channel.ICE_CANDIDATES].events == []

    store.set_offer("s2", offer("X"))
    assert len(other.events) == 1


def test_close_ends_everything() -> None:
    registry = make_registry()
    closed: List[Subscription] = []
    registry.register("s1", Channel.OFFER, Recorder(), on_close=closed.append)
    registry.register("s2", Channel.ICE_CANDIDATES, Recorder(), on_close=closed.append)

    registry.close()

    assert len(closed) == 2
    assert registry.stats() == {"subscriptions": 0, "detectors": 0, "subscribedSessions": 0}


def test_register_rejects_unknown_channel() -> None:
    registry = make_registry()
    with pytest.raises(UnknownChannel):
        registry.register("s1", "video", Recorder())
    with pytest.raises(TypeError):
        registry.register("s1", Channel.OFFER, "not callable")  # type: ignore[arg-type]


def test_detector_without_subscribers_is_idle() -> None:
    store = SessionStore()
    detector = ChangeDetector(store, "s1", Channel.OFFER)
    detector.check()
    assert detector.running is False

    recorder = Recorder()
    subscription = Subscription(id="sub", session_key="s1", channel=Channel.OFFER, deliver=recorder)
    detector.attach(subscription)
    assert detector.running is True

    store.set_offer("s1", offer("A"))
    assert subscription.cursor == offer("A")
    assert subscription.delivered == 1

    assert detector.detach(subscription) is True
    assert detector.detach(subscription) is False
    assert detector.running is False


def test_no_delivery_after_unregister_while_writer_runs() -> None:
    registry = make_registry()
    started = threading.Event()
    unregistered = threading.Event()
    stop = threading.Event()
    late: List[SignalEvent] = []

    def deliver(event: SignalEvent) -> None:
        started.set()
        if unregistered.is_set():
            late.append(event)

    subscription_id = registry.register("s1", Channel.OFFER, deliver)

    def writer() -> None:
        n = 0
        while not stop.is_set():
            registry.store.set_offer("s1", offer(f"v{n}"))
            n += 1

    thread = threading.Thread(target=writer)
    thread.start()
    try:
        assert started.wait(2.0)
        assert registry.unregister(subscription_id) is True
        unregistered.set()
        # Keep writing for a while after the unregister returned.
        for _ in range(200):
            registry.store.set_offer("s1", offer("main"))
            registry.store.set_offer("s1", offer("main-2"))
    finally:
        stop.set()
        thread.join()

    assert late == []
    assert registry.detector_count() == 0
