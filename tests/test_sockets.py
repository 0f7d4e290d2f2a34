"""Tests covering WebSocket session teardown without a real transport."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Dict, Optional

from relay.api.server import SocketManager
from relay.api.state import RelayState


class DeadTransportWebSocket:
    """Minimal WebSocket stand-in whose close fails like a vanished peer."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: asyncio.Queue = asyncio.Queue()
        self.close_attempts = 0

    async def accept(self) -> None:
        return None

    async def receive_json(self) -> Dict[str, Any]:
        return await self.inbox.get()

    async def send_json(self, payload: Dict[str, Any]) -> None:
        await self.sent.put(payload)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.close_attempts += 1
        raise ConnectionResetError("transport already gone")


async def start_subscribed(manager: SocketManager, user_id: str):
    websocket = DeadTransportWebSocket()
    task = asyncio.create_task(manager.run(websocket))
    await websocket.inbox.put({"type": "subscribe", "streamType": "offer", "userId": user_id})
    ack = await asyncio.wait_for(websocket.sent.get(), timeout=1.0)
    assert ack["type"] == "subscribed"
    return websocket, task


def test_repeated_cancellation_still_releases_subscriptions() -> None:
    async def scenario():
        state = RelayState()
        manager = SocketManager(state)
        _, task = await start_subscribed(manager, "s1")
        before = state.registry.subscription_count()

        task.cancel()
        await asyncio.sleep(0)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return before, state.registry.stats(), manager.connection_count

    before, stats, connections = asyncio.run(scenario())

    assert before == 1
    assert stats == {"subscriptions": 0, "detectors": 0, "subscribedSessions": 0}
    assert connections == 0


def test_stop_survives_failing_close_on_every_session() -> None:
    async def scenario():
        state = RelayState()
        manager = SocketManager(state)
        first, first_task = await start_subscribed(manager, "s1")
        second, second_task = await start_subscribed(manager, "s2")

        await manager.stop()
        await asyncio.wait_for(asyncio.gather(first_task, second_task), timeout=1.0)
        return state, manager, first.close_attempts, second.close_attempts

    state, manager, first_closes, second_closes = asyncio.run(scenario())

    assert (first_closes, second_closes) == (1, 1)
    assert state.registry.subscription_count() == 0
    assert state.store.watcher_count() == 0
    assert manager.connection_count == 0
