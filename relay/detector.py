"""
Change detection for one (session, channel) pair.

A :class:`ChangeDetector` sits between the :class:`~relay.store.SessionStore`
and the subscriptions of one channel.  The store calls :meth:`check` on every
write to that channel; the detector re-reads the current state and compares it
with each subscription's cursor, so every subscriber sees each transition
exactly once and in write order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .rtc.webrtc import Channel, Payload, SignalEvent
from .store import SessionStore

LOG = logging.getLogger(__name__)

Deliver = Callable[[SignalEvent], None]


@dataclass(eq=False)
class Subscription:
    """
    One live subscriber of a session channel.

    ``cursor`` is the last delivered value for offer/answer channels and the
    next unread candidate index for the ICE candidate channel.
    """

    id: str
    session_key: str
    channel: Channel
    deliver: Deliver = field(repr=False)
    cursor: Any = None
    active: bool = True
    delivered: int = 0


class ChangeDetector:
    """Fan out state transitions of one session channel to its subscribers."""

    def __init__(
        self,
        store: SessionStore,
        session_key: str,
        channel: Channel,
        *,
        on_failure: Optional[Callable[[Subscription], None]] = None,
    ) -> None:
        self.store = store
        self.session_key = session_key
        self.channel = channel
        self._on_failure = on_failure
        self._subscribers: Dict[str, Subscription] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        if self._running:
            return
        self.store.watch(self.session_key, self.channel, self)
        self._running = True
        LOG.debug("Detector started session=%s channel=%s", self.session_key, self.channel.value)

    def stop(self) -> None:
        if not self._running:
            return
        self.store.unwatch(self.session_key, self.channel, self)
        self._running = False
        LOG.debug("Detector stopped session=%s channel=%s", self.session_key, self.channel.value)

    def attach(self, subscription: Subscription) -> None:
        """
        Start delivering to ``subscription``.

        Offer and answer subscribers only hear about values written after they
        attach.  ICE candidate subscribers start at index 0 and receive the
        existing candidates straight away.
        """

        with self.store.locked(self.session_key):
            if self.channel is Channel.ICE_CANDIDATES:
                subscription.cursor = 0
            else:
                subscription.cursor = self.store.get_value(self.session_key, self.channel)
            self._subscribers[subscription.id] = subscription
            self.start()
            if self.channel is Channel.ICE_CANDIDATES:
                self._emit_candidates([subscription])

    def detach(self, subscription: Subscription) -> bool:
        """Remove ``subscription``; stop watching once nobody is left."""

        with self.store.locked(self.session_key):
            subscription.active = False
            removed = self._subscribers.pop(subscription.id, None) is not None
            if not self._subscribers:
                self.stop()
        return removed

    # ------------------------------------------------------------------ detection

    def check(self) -> None:
        with self.store.locked(self.session_key):
            subscribers = list(self._subscribers.values())
            if not subscribers:
                return
            if self.channel is Channel.ICE_CANDIDATES:
                self._emit_candidates(subscribers)
            else:
                self._emit_value(subscribers)

    def _emit_value(self, subscribers: List[Subscription]) -> None:
        value = self.store.get_value(self.session_key, self.channel)
        if value is None:
            return
        for subscription in subscribers:
            if value == subscription.cursor:
                continue
            subscription.cursor = value
            self._deliver(subscription, value)

    def _emit_candidates(self, subscribers: List[Subscription]) -> None:
        low = min(int(subscription.cursor or 0) for subscription in subscribers)
        candidates, end = self.store.get_candidates_since(self.session_key, low)
        for subscription in subscribers:
            offset = max(0, int(subscription.cursor or 0) - low)
            fresh = candidates[offset:]
            subscription.cursor = end
            for candidate in fresh:
                if not self._deliver(subscription, candidate):
                    break

    def _deliver(self, subscription: Subscription, payload: Payload) -> bool:
        if not subscription.active:
            return False
        event = SignalEvent(channel=self.channel, payload=payload, session_key=self.session_key)
        try:
            subscription.deliver(event)
        except Exception as exc:
            LOG.warning(
                "Delivery failed for subscription=%s session=%s channel=%s: %s",
                subscription.id,
                self.session_key,
                self.channel.value,
                exc,
            )
            self._drop(subscription)
            return False
        subscription.delivered += 1
        return True

    def _drop(self, subscription: Subscription) -> None:
        subscription.active = False
        self._subscribers.pop(subscription.id, None)
        if self._on_failure is not None:
            self._on_failure(subscription)
        if not self._subscribers:
            self.stop()


__all__ = ["ChangeDetector", "Deliver", "Subscription"]
