"""
Shared relay state container.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from ..registry import EventStream, SubscriptionRegistry
from ..detector import Deliver
from ..rtc.webrtc import Channel, IceCandidate, SessionDescription, SessionState
from ..store import SessionStore

LOG = logging.getLogger(__name__)


@dataclass
class RelayState:
    """
    The store and subscription registry shared by the HTTP and WebSocket layers.

    One instance is built at startup and handed to :func:`create_app`; nothing
    here is module-global.
    """

    store: SessionStore = field(default_factory=SessionStore)
    registry: SubscriptionRegistry = field(init=False)

    def __post_init__(self) -> None:
        self.registry = SubscriptionRegistry(self.store)

    # ------------------------------------------------------------------ mutations

    def set_offer(self, session_key: str, description: SessionDescription) -> SessionDescription:
        self.store.set_offer(session_key, description)
        LOG.info("Offer set for session=%s", session_key)
        return description

    def set_answer(self, session_key: str, description: SessionDescription) -> SessionDescription:
        self.store.set_answer(session_key, description)
        LOG.info("Answer set for session=%s", session_key)
        return description

    def add_ice_candidate(self, session_key: str, candidate: IceCandidate) -> int:
        index = self.store.append_candidate(session_key, candidate)
        LOG.info("ICE candidate #%d added for session=%s", index, session_key)
        return index

    def clear_session(self, session_key: str) -> bool:
        existed = self.store.clear_session(session_key)
        LOG.info("Cleared data for session=%s existed=%s", session_key, existed)
        return existed

    def session_exists(self, session_key: str) -> bool:
        return self.store.session_exists(session_key)

    def snapshot(self, session_key: str) -> SessionState:
        return self.store.snapshot(session_key)

    # ------------------------------------------------------------------ subscriptions

    def subscribe(
        self,
        session_key: str,
        channel: Union[Channel, str],
        deliver: Optional[Deliver] = None,
        *,
        maxsize: int = 0,
    ) -> Union[str, EventStream]:
        """
        Subscribe to a session channel.

        With ``deliver`` the subscription id is returned and events are passed
        to the callback.  Without it an :class:`EventStream` is returned; it
        carries the id as ``subscription_id`` and must be created on a running
        event loop.
        """

        if deliver is not None:
            return self.registry.register(session_key, channel, deliver)
        return self.registry.open_stream(session_key, channel, maxsize=maxsize)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.registry.unregister(subscription_id)

    def health(self) -> dict:
        return {"sessions": len(self.store), **self.registry.stats()}

    def shutdown(self) -> None:
        self.registry.close()
