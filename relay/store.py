"""
In-memory signalling state keyed by session.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from .rtc.webrtc import Channel, IceCandidate, SessionDescription, SessionState

LOG = logging.getLogger(__name__)

ClearListener = Callable[[str], None]


class Watcher(Protocol):
    """Object told about every write to one (session, channel) pair."""

    def check(self) -> None:  # pragma: no cover - protocol
        ...


class _SessionSlot:
    __slots__ = ("lock", "offer", "answer", "candidates", "watchers", "retired", "depth")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.offer: Optional[SessionDescription] = None
        self.answer: Optional[SessionDescription] = None
        self.candidates: List[IceCandidate] = []
        self.watchers: Dict[Channel, Watcher] = {}
        self.retired = False
        self.depth = 0

    @property
    def has_state(self) -> bool:
        return self.offer is not None or self.answer is not None or bool(self.candidates)

    @property
    def is_empty(self) -> bool:
        return not self.has_state and not self.watchers


class SessionStore:
    """
    Owns offers, answers and ICE candidates for every live session.

    Each session key has its own re-entrant lock, so operations on different
    keys only share a short dictionary lookup.  Writes notify the watcher
    registered for the written channel while the key lock is still held, which
    linearises writes with the events they produce.
    """

    def __init__(self) -> None:
        self._slots_lock = threading.Lock()
        self._slots: Dict[str, _SessionSlot] = {}
        self._clear_listeners: List[ClearListener] = []

    # ------------------------------------------------------------------ helpers

    def _peek(self, key: str) -> Optional[_SessionSlot]:
        with self._slots_lock:
            return self._slots.get(key)

    def _get_or_create(self, key: str) -> _SessionSlot:
        with self._slots_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _SessionSlot()
            return slot

    def _maybe_retire(self, key: str, slot: _SessionSlot) -> None:
        if slot.depth or slot.retired or not slot.is_empty:
            return
        with self._slots_lock:
            if self._slots.get(key) is slot:
                del self._slots[key]
        slot.retired = True

    @contextmanager
    def _locked_slot(self, key: str) -> Iterator[_SessionSlot]:
        while True:
            slot = self._get_or_create(key)
            with slot.lock:
                if slot.retired:
                    # Lost a race with retirement; pick up the replacement slot.
                    continue
                slot.depth += 1
                try:
                    yield slot
                finally:
                    slot.depth -= 1
                    self._maybe_retire(key, slot)
                return

    def _notify(self, key: str, slot: _SessionSlot, channel: Channel) -> None:
        watcher = slot.watchers.get(channel)
        if watcher is None:
            return
        try:
            watcher.check()
        except Exception:  # pragma: no cover
            LOG.exception("Watcher for session=%s channel=%s failed.", key, channel.value)

    # ------------------------------------------------------------------ locking

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Hold ``key``'s lock; used to make multi-step reads and attaches atomic."""

        with self._locked_slot(key):
            yield

    # ------------------------------------------------------------------ writes

    def set_offer(self, key: str, description: SessionDescription) -> None:
        with self._locked_slot(key) as slot:
            slot.offer = description
            self._notify(key, slot, Channel.OFFER)

    def set_answer(self, key: str, description: SessionDescription) -> None:
        with self._locked_slot(key) as slot:
            slot.answer = description
            self._notify(key, slot, Channel.ANSWER)

    def append_candidate(self, key: str, candidate: IceCandidate) -> int:
        """Append ``candidate`` and return its index in the session's sequence."""

        with self._locked_slot(key) as slot:
            slot.candidates.append(candidate)
            index = len(slot.candidates) - 1
            self._notify(key, slot, Channel.ICE_CANDIDATES)
        return index

    def clear_session(self, key: str) -> bool:
        """
        Drop all state for ``key`` and run the clear listeners before returning.

        Returns ``True`` when the session held any state.
        """

        with self._locked_slot(key) as slot:
            existed = slot.has_state
            slot.offer = None
            slot.answer = None
            slot.candidates = []
            for listener in list(self._clear_listeners):
                try:
                    listener(key)
                except Exception:  # pragma: no cover
                    LOG.exception("Clear listener failed for session=%s", key)
        LOG.debug("Cleared session=%s existed=%s", key, existed)
        return existed

    # ------------------------------------------------------------------ reads

    def get_offer(self, key: str) -> Optional[SessionDescription]:
        slot = self._peek(key)
        if slot is None:
            return None
        with slot.lock:
            return slot.offer

    def get_answer(self, key: str) -> Optional[SessionDescription]:
        slot = self._peek(key)
        if slot is None:
            return None
        with slot.lock:
            return slot.answer

    def get_candidates_since(self, key: str, cursor: int) -> Tuple[Tuple[IceCandidate, ...], int]:
        """Return candidates at index ``cursor`` onwards and the new cursor."""

        slot = self._peek(key)
        if slot is None:
            return (), 0
        start = max(0, int(cursor))
        with slot.lock:
            candidates = tuple(slot.candidates[start:])
            return candidates, len(slot.candidates)

    def get_value(self, key: str, channel: Channel) -> Optional[SessionDescription]:
        if channel is Channel.OFFER:
            return self.get_offer(key)
        if channel is Channel.ANSWER:
            return self.get_answer(key)
        raise ValueError(f"{channel.value} has no single current value")

    def session_exists(self, key: str) -> bool:
        return self.get_offer(key) is not None

    def snapshot(self, key: str) -> SessionState:
        slot = self._peek(key)
        if slot is None:
            return SessionState()
        with slot.lock:
            return SessionState(
                offer=slot.offer,
                answer=slot.answer,
                candidates=tuple(slot.candidates),
            )

    def session_keys(self) -> List[str]:
        with self._slots_lock:
            slots = list(self._slots.items())
        return sorted(key for key, slot in slots if slot.has_state)

    def __len__(self) -> int:
        return len(self.session_keys())

    # ------------------------------------------------------------------ watchers

    def watch(self, key: str, channel: Channel, watcher: Watcher) -> None:
        with self._locked_slot(key) as slot:
            current = slot.watchers.get(channel)
            if current is not None and current is not watcher:
                raise RuntimeError(
                    f"session={key} channel={channel.value} already has a watcher"
                )
            slot.watchers[channel] = watcher

    def unwatch(self, key: str, channel: Channel, watcher: Watcher) -> None:
        with self._locked_slot(key) as slot:
            if slot.watchers.get(channel) is watcher:
                del slot.watchers[channel]

    def watcher_count(self) -> int:
        with self._slots_lock:
            slots = list(self._slots.values())
        return sum(len(slot.watchers) for slot in slots)

    def add_clear_listener(self, listener: ClearListener) -> None:
        self._clear_listeners.append(listener)

    def remove_clear_listener(self, listener: ClearListener) -> None:
        try:
            self._clear_listeners.remove(listener)
        except ValueError:
            pass


__all__ = ["SessionStore", "Watcher"]
