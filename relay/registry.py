"""
Subscription bookkeeping shared by every transport.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from .detector import ChangeDetector, Deliver, Subscription
from .errors import DeliveryFailure
from .rtc.webrtc import Channel, SignalEvent
from .store import SessionStore

LOG = logging.getLogger(__name__)

CloseCallback = Callable[[Subscription], None]


class SubscriptionRegistry:
    """
    Track live subscriptions and the detectors feeding them.

    Subscriptions to the same (session, channel) pair share one
    :class:`ChangeDetector`.  A secondary index from session key to
    subscription ids keeps the teardown on ``clear_session`` proportional to
    the session's own subscribers.

    Lock order is session key lock first, registry lock second.  The registry
    lock only guards the tables below and is never held while calling out.
    """

    def __init__(self, store: SessionStore) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._close_callbacks: Dict[str, CloseCallback] = {}
        self._session_index: Dict[str, Set[str]] = defaultdict(set)
        self._detectors: Dict[Tuple[str, Channel], ChangeDetector] = {}
        store.add_clear_listener(self.unregister_all_for_session)

    # ------------------------------------------------------------------ helpers

    def _unindex_locked(self, subscription: Subscription) -> Optional[CloseCallback]:
        self._subscriptions.pop(subscription.id, None)
        ids = self._session_index.get(subscription.session_key)
        if ids is not None:
            ids.discard(subscription.id)
            if not ids:
                self._session_index.pop(subscription.session_key, None)
        return self._close_callbacks.pop(subscription.id, None)

    def _release_detector(self, detector: ChangeDetector) -> None:
        if detector.subscriber_count:
            return
        key = (detector.session_key, detector.channel)
        with self._lock:
            if self._detectors.get(key) is detector:
                del self._detectors[key]

    def _run_close_callback(self, subscription: Subscription, callback: Optional[CloseCallback]) -> None:
        if callback is None:
            return
        try:
            callback(subscription)
        except Exception:  # pragma: no cover - callbacks only schedule work
            LOG.exception("Close callback failed for subscription=%s", subscription.id)

    def _forget(self, subscription: Subscription) -> None:
        """Drop a subscription whose delivery failed; called by its detector."""

        with self._lock:
            if subscription.id not in self._subscriptions:
                return
            callback = self._unindex_locked(subscription)
            detector = self._detectors.get((subscription.session_key, subscription.channel))
        if detector is not None and not detector.subscriber_count:
            self._release_detector(detector)
        LOG.info(
            "Subscription %s dropped after delivery failure session=%s channel=%s",
            subscription.id,
            subscription.session_key,
            subscription.channel.value,
        )
        self._run_close_callback(subscription, callback)

    # ------------------------------------------------------------------ public API

    def register(
        self,
        session_key: str,
        channel: Union[Channel, str],
        deliver: Deliver,
        *,
        on_close: Optional[CloseCallback] = None,
    ) -> str:
        """
        Subscribe ``deliver`` to ``channel`` of ``session_key``.

        ``deliver`` runs with the session lock held and must only hand the
        event off.  ``on_close`` runs when the registry ends the subscription on
        its own (session cleared, delivery failure or shutdown), never on an
        explicit :meth:`unregister`.
        """

        if not callable(deliver):
            raise TypeError("deliver must be callable")
        channel = Channel.parse(channel)
        subscription = Subscription(
            id=uuid.uuid4().hex,
            session_key=session_key,
            channel=channel,
            deliver=deliver,
        )
        with self.store.locked(session_key):
            with self._lock:
                detector = self._detectors.get((session_key, channel))
                if detector is None:
                    detector = ChangeDetector(
                        self.store, session_key, channel, on_failure=self._forget
                    )
                    self._detectors[(session_key, channel)] = detector
                self._subscriptions[subscription.id] = subscription
                self._session_index[session_key].add(subscription.id)
                if on_close is not None:
                    self._close_callbacks[subscription.id] = on_close
            detector.attach(subscription)
        LOG.info(
            "Subscription %s registered session=%s channel=%s",
            subscription.id,
            session_key,
            channel.value,
        )
        return subscription.id

    def unregister(self, subscription_id: str) -> bool:
        """
        End a subscription.  Safe to call repeatedly; returns ``True`` only for
        the call that actually removed it.  No event reaches the subscription's
        ``deliver`` after this returns.
        """

        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False

        with self.store.locked(subscription.session_key):
            with self._lock:
                if subscription_id not in self._subscriptions:
                    return False
                self._unindex_locked(subscription)
                detector = self._detectors.get((subscription.session_key, subscription.channel))
            subscription.active = False
            if detector is not None:
                detector.detach(subscription)
                self._release_detector(detector)
        LOG.info(
            "Subscription %s unregistered session=%s channel=%s",
            subscription_id,
            subscription.session_key,
            subscription.channel.value,
        )
        return True

    def unregister_all_for_session(self, session_key: str) -> int:
        """End every subscription bound to ``session_key``; returns how many."""

        with self.store.locked(session_key):
            with self._lock:
                ids = self._session_index.pop(session_key, set())
                removed: List[Tuple[Subscription, Optional[CloseCallback]]] = []
                for subscription_id in ids:
                    subscription = self._subscriptions.pop(subscription_id, None)
                    if subscription is None:
                        continue
                    removed.append((subscription, self._close_callbacks.pop(subscription_id, None)))
                detectors: List[ChangeDetector] = []
                for channel in {subscription.channel for subscription, _ in removed}:
                    detector = self._detectors.get((session_key, channel))
                    if detector is not None:
                        detectors.append(detector)
            for subscription, _ in removed:
                subscription.active = False
            for detector in detectors:
                for subscription, _ in removed:
                    if subscription.channel is detector.channel:
                        detector.detach(subscription)
                self._release_detector(detector)
            for subscription, callback in removed:
                self._run_close_callback(subscription, callback)
        if removed:
            LOG.info("Ended %d subscription(s) for cleared session=%s", len(removed), session_key)
        return len(removed)

    def close(self) -> None:
        """End every subscription; used on server shutdown."""

        with self._lock:
            keys = list(self._session_index.keys())
        for key in keys:
            self.unregister_all_for_session(key)

    def open_stream(
        self,
        session_key: str,
        channel: Union[Channel, str],
        *,
        maxsize: int = 0,
    ) -> "EventStream":
        """Subscribe and return the events as an async iterator."""

        return EventStream(self, session_key, channel, maxsize=maxsize)

    # ------------------------------------------------------------------ introspection

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def subscription_count(self, session_key: Optional[str] = None) -> int:
        with self._lock:
            if session_key is None:
                return len(self._subscriptions)
            return len(self._session_index.get(session_key, ()))

    def detector_count(self) -> int:
        with self._lock:
            return len(self._detectors)

    def stats(self) -> dict:
        with self._lock:
            return {
                "subscriptions": len(self._subscriptions),
                "detectors": len(self._detectors),
                "subscribedSessions": len(self._session_index),
            }


_CLOSED = object()


class EventStream:
    """
    Asyncio view of one subscription.

    Events are handed over with ``call_soon_threadsafe`` so writers on other
    threads never touch the queue directly.  The stream ends when it is closed
    locally or when the registry ends the subscription.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        session_key: str,
        channel: Union[Channel, str],
        *,
        maxsize: int = 0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.registry = registry
        self.session_key = session_key
        self.channel = Channel.parse(channel)
        self.maxsize = max(0, int(maxsize))
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._finished = False
        self.subscription_id = registry.register(
            session_key, self.channel, self._deliver, on_close=self._on_registry_close
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: SignalEvent) -> None:
        if self._closed:
            raise DeliveryFailure("stream closed")
        try:
            self._loop.call_soon_threadsafe(self._push, event)
        except RuntimeError as exc:
            raise DeliveryFailure(f"event loop unavailable: {exc}") from exc

    def _push(self, event: SignalEvent) -> None:
        if self._finished:
            return
        if self.maxsize and self._queue.qsize() >= self.maxsize:
            LOG.warning("Event stream %s overflowed; closing", self.subscription_id)
            self.close()
            return
        self._queue.put_nowait(event)

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_CLOSED)

    def _on_registry_close(self, _subscription: Subscription) -> None:
        self._closed = True
        try:
            self._loop.call_soon_threadsafe(self._finish)
        except RuntimeError:
            LOG.debug("Loop closed before stream %s could finish", self.subscription_id)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.registry.unregister(self.subscription_id)
        self._finish()

    async def get(self, timeout: Optional[float] = None) -> Optional[SignalEvent]:
        """
        Wait for the next event.  Returns ``None`` on timeout and raises
        :class:`StopAsyncIteration` once the stream has ended.
        """

        if timeout is None:
            item = await self._queue.get()
        else:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
        return self._unwrap(item)

    def _unwrap(self, item: object) -> SignalEvent:
        if item is _CLOSED:
            # Leave the marker for any other waiter.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> SignalEvent:
        return self._unwrap(await self._queue.get())

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["EventStream", "SubscriptionRegistry"]
