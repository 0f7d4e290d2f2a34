"""
FastAPI surface of the signalling relay.

Mutations arrive as plain HTTP calls.  Subscribers attach either through a
server-sent-event stream per channel or through one WebSocket carrying any
number of channel subscriptions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from .. import RelayConfig
from ..detector import Subscription
from ..errors import DeliveryFailure, MalformedPayload
from ..registry import EventStream
from ..rtc.webrtc import Channel, SignalEvent
from . import schemas
from .state import RelayState

LOG = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: SignalEvent) -> str:
    return f"data: {json.dumps(event.payload.to_dict())}\n\n"


async def sse_event_source(
    request: Any,
    stream: EventStream,
    *,
    keepalive: float = 15.0,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for ``stream`` until the client goes away or the
    subscription is ended by the registry.  The subscription is always
    released on exit.
    """

    try:
        while True:
            try:
                event = await stream.get(timeout=keepalive or None)
            except StopAsyncIteration:
                break
            if event is None:
                if await request.is_disconnected():
                    break
                yield ": keep-alive\n\n"
                continue
            yield format_sse(event)
    finally:
        stream.close()


class SocketSession:
    """Track one WebSocket connection and its channel subscriptions."""

    def __init__(self, manager: "SocketManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.subscriptions: Dict[Channel, Tuple[str, str]] = {}
        self.last_pong = time.monotonic()
        self.pong_seen = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.connection_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to accept WebSocket connection")
            return

        self._loop = asyncio.get_running_loop()
        self.manager.add(self)
        self.logger.info("WebSocket connection established")

        tasks = [
            asyncio.create_task(self._recv_loop()),
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._keepalive_loop()),
        ]
        try:
            await self._stop_event.wait()
        finally:
            # Released before any await so a repeated cancellation cannot skip it.
            self.release()
            self.manager.discard(self)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.close(code=1000)
            self.logger.info("WebSocket connection closed")

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self._stop_event.set()
        if self._closing:
            return
        self._closing = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as exc:
            self.logger.debug("Close after disconnect ignored: %r", exc)

    def release(self) -> None:
        """Unregister every subscription held by this connection."""

        subscriptions = list(self.subscriptions.values())
        self.subscriptions.clear()
        for _, subscription_id in subscriptions:
            self.manager.state.unsubscribe(subscription_id)

    # ------------------------------------------------------------------ outbound

    def _enqueue(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.logger.warning("Outbound queue full; closing connection")
            self._stop_event.set()

    async def send(self, payload: Dict[str, Any]) -> None:
        self._enqueue(payload)

    def make_deliver(self, session_key: str, channel: Channel) -> Callable[[SignalEvent], None]:
        def deliver(event: SignalEvent) -> None:
            loop = self._loop
            if loop is None or self.is_stopped:
                raise DeliveryFailure("connection closed")
            frame = {
                "type": channel.frame_type,
                "channel": channel.value,
                "userId": session_key,
                "data": event.payload.to_dict(),
            }
            try:
                loop.call_soon_threadsafe(self._enqueue, frame)
            except RuntimeError as exc:
                raise DeliveryFailure(f"event loop unavailable: {exc}") from exc

        return deliver

    def on_subscription_closed(self, subscription: Subscription) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._subscription_ended, subscription)
        except RuntimeError:
            self.logger.debug("Loop closed before subscription %s ended", subscription.id)

    def _subscription_ended(self, subscription: Subscription) -> None:
        current = self.subscriptions.get(subscription.channel)
        if current is None or current[1] != subscription.id:
            return
        del self.subscriptions[subscription.channel]
        self._enqueue(
            {
                "type": "hangup",
                "streamType": subscription.channel.value,
                "userId": subscription.session_key,
                "subscriptionId": subscription.id,
            }
        )

    # ------------------------------------------------------------------ loops

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except WebSocketDisconnect:
                    break
                except (ValueError, KeyError) as exc:
                    await self.send(_error_frame("E_INVALID_JSON", f"Invalid JSON message: {exc}"))
                    continue

                if not isinstance(message, dict):
                    await self.send(_error_frame("E_INVALID_PAYLOAD", "Messages must be JSON objects"))
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.last_pong = time.monotonic()
                    self.pong_seen = True
                    continue
                if msg_type == "ping":
                    await self.send({"type": "pong", "ts": time.time()})
                    continue

                try:
                    await self.manager.handle_message(self, message)
                except MalformedPayload as exc:
                    await self.send(_error_frame("E_INVALID_PAYLOAD", str(exc)))
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing message")
        except RuntimeError as exc:
            self.logger.debug("Receive loop ended: %s", exc)
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                payload = await self.send_queue.get()
                try:
                    await self.websocket.send_json(payload)
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    self.logger.debug("Send failed: %s", exc)
                    break
                except Exception:  # pragma: no cover
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        if self.manager.ping_interval <= 0:
            return
        while not self.is_stopped:
            await asyncio.sleep(self.manager.ping_interval)
            if self.is_stopped:
                break
            await self.send({"type": "ping", "ts": time.time()})
            # Clients that never answered a ping are not timed out.
            if not self.pong_seen:
                continue
            if (time.monotonic() - self.last_pong) > self.manager.pong_timeout:
                self.logger.warning("Ping timeout; closing connection")
                self._stop_event.set()
                break


def _error_frame(code: str, message: str) -> Dict[str, Any]:
    return {"type": "error", "payload": {"code": code, "message": message}}


class SocketManager:
    """Demultiplex WebSocket messages onto relay subscriptions."""

    def __init__(
        self,
        state: RelayState,
        *,
        queue_size: int = 256,
        ping_interval: float = 0.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.state = state
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self._sessions: Set[SocketSession] = set()

    @property
    def connection_count(self) -> int:
        return len(self._sessions)

    def add(self, session: SocketSession) -> None:
        self._sessions.add(session)

    def discard(self, session: SocketSession) -> None:
        self._sessions.discard(session)

    async def run(self, websocket: WebSocket) -> None:
        session = SocketSession(self, websocket, queue_size=self.queue_size)
        await session.run()

    async def stop(self) -> None:
        sessions = list(self._sessions)
        for session in sessions:
            session.release()
        for session in sessions:
            await session.close(code=1001, reason="server shutdown")

    async def handle_message(self, session: SocketSession, message: Dict[str, Any]) -> None:
        message_type = str(message.get("type") or "")

        if message_type == "subscribe":
            await self._handle_subscribe(session, message)
            return

        if message_type == "unsubscribe":
            await self._handle_unsubscribe(session, message)
            return

        raise MalformedPayload(f"Unsupported message type '{message_type}'")

    @staticmethod
    def _session_key(message: Dict[str, Any]) -> str:
        for key in ("userId", "sessionKey", "user_id"):
            value = message.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        raise MalformedPayload("subscribe requires userId")

    async def _handle_subscribe(self, session: SocketSession, message: Dict[str, Any]) -> None:
        channel = Channel.parse(message.get("streamType") or message.get("channel"))
        session_key = self._session_key(message)

        current = session.subscriptions.get(channel)
        if current is not None:
            if current[0] == session_key:
                await session.send(_subscription_frame("subscribed", channel, session_key, current[1]))
                return
            session.subscriptions.pop(channel, None)
            self.state.unsubscribe(current[1])

        subscription_id = self.state.registry.register(
            session_key,
            channel,
            session.make_deliver(session_key, channel),
            on_close=session.on_subscription_closed,
        )
        session.subscriptions[channel] = (session_key, subscription_id)
        # Enqueued before the backlog callbacks scheduled by register() run.
        await session.send(_subscription_frame("subscribed", channel, session_key, subscription_id))

    async def _handle_unsubscribe(self, session: SocketSession, message: Dict[str, Any]) -> None:
        channel = Channel.parse(message.get("streamType") or message.get("channel"))
        current = session.subscriptions.pop(channel, None)
        if current is None:
            await session.send(_subscription_frame("unsubscribed", channel, message.get("userId"), None))
            return
        session_key, subscription_id = current
        self.state.unsubscribe(subscription_id)
        await session.send(_subscription_frame("unsubscribed", channel, session_key, subscription_id))


def _subscription_frame(
    frame_type: str, channel: Channel, session_key: Optional[str], subscription_id: Optional[str]
) -> Dict[str, Any]:
    return {
        "type": frame_type,
        "streamType": channel.value,
        "userId": session_key,
        "subscriptionId": subscription_id,
    }


def create_app(
    *,
    state: Optional[RelayState] = None,
    config: Optional[RelayConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    relay_state = state or RelayState()
    relay_config = config or RelayConfig()

    sockets = SocketManager(
        relay_state,
        queue_size=relay_config.queue_size,
        ping_interval=relay_config.ping_interval,
        pong_timeout=relay_config.pong_timeout,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            try:
                await sockets.stop()
            finally:
                relay_state.shutdown()

    app = FastAPI(title="WebRTC Signalling Relay", lifespan=app_lifespan)
    app.state.relay = relay_state
    app.state.sockets = sockets
    app.add_middleware(
        CORSMiddleware,
        allow_origins=relay_config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_key(session_key: Optional[str]) -> str:
        if not session_key:
            raise HTTPException(status_code=422, detail="userId is required")
        return session_key

    # ------------------------------------------------------------------ mutations

    def set_offer(session_key: Optional[str], payload: schemas.SessionDescriptionRequest) -> dict:
        key = require_key(payload.resolve_key(session_key))
        try:
            description = payload.to_description("offer")
        except MalformedPayload as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        relay_state.set_offer(key, description)
        return {"ok": True, "userId": key, "offer": description.to_dict()}

    def set_answer(session_key: Optional[str], payload: schemas.SessionDescriptionRequest) -> dict:
        key = require_key(payload.resolve_key(session_key))
        try:
            description = payload.to_description("answer")
        except MalformedPayload as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        relay_state.set_answer(key, description)
        return {"ok": True, "userId": key, "answer": description.to_dict()}

    def add_candidate(session_key: Optional[str], payload: schemas.IceCandidateRequest) -> dict:
        key = require_key(payload.resolve_key(session_key))
        try:
            candidate = payload.to_candidate()
        except MalformedPayload as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        index = relay_state.add_ice_candidate(key, candidate)
        return {"ok": True, "userId": key, "index": index, "iceCandidate": candidate.to_dict()}

    def hangup(session_key: Optional[str]) -> dict:
        key = require_key(session_key)
        existed = relay_state.clear_session(key)
        return {"ok": True, "userId": key, "cleared": existed}

    @app.post("/set-offer/{session_key}")
    async def set_offer_for(session_key: str, payload: schemas.SessionDescriptionRequest) -> dict:
        return set_offer(session_key, payload)

    @app.post("/set-offer")
    async def set_offer_body(payload: schemas.SessionDescriptionRequest) -> dict:
        return set_offer(None, payload)

    @app.post("/set-answer/{session_key}")
    async def set_answer_for(session_key: str, payload: schemas.SessionDescriptionRequest) -> dict:
        return set_answer(session_key, payload)

    @app.post("/set-answer")
    async def set_answer_body(payload: schemas.SessionDescriptionRequest) -> dict:
        return set_answer(None, payload)

    @app.post("/add-iceCandidate/{session_key}")
    async def add_candidate_for(session_key: str, payload: schemas.IceCandidateRequest) -> dict:
        return add_candidate(session_key, payload)

    @app.post("/add-iceCandidate")
    async def add_candidate_body(payload: schemas.IceCandidateRequest) -> dict:
        return add_candidate(None, payload)

    @app.delete("/hangup/{session_key}")
    async def hangup_for(session_key: str) -> dict:
        return hangup(session_key)

    @app.delete("/hangup")
    async def hangup_body(payload: schemas.SessionKeyModel) -> dict:
        return hangup(payload.user_id)

    # ------------------------------------------------------------------ queries

    @app.get("/", response_class=PlainTextResponse)
    async def index() -> str:
        return "Welcome to the server"

    @app.get("/healthz", response_model=schemas.HealthModel)
    async def healthz() -> schemas.HealthModel:
        return schemas.HealthModel(status="ok", **relay_state.health())

    @app.get("/roomexists/{session_key}", response_model=schemas.RoomExistsResponse)
    async def room_exists_for(session_key: str) -> schemas.RoomExistsResponse:
        return schemas.RoomExistsResponse(exists=relay_state.session_exists(session_key))

    @app.post("/roomexists", response_model=schemas.RoomExistsResponse)
    async def room_exists_body(payload: schemas.SessionKeyModel) -> schemas.RoomExistsResponse:
        key = require_key(payload.user_id)
        return schemas.RoomExistsResponse(exists=relay_state.session_exists(key))

    @app.get("/sessions/{session_key}", response_model=schemas.SessionStateModel)
    async def get_session(session_key: str) -> schemas.SessionStateModel:
        snapshot = relay_state.snapshot(session_key).to_dict()
        return schemas.SessionStateModel(
            sessionKey=session_key,
            exists=relay_state.session_exists(session_key),
            **snapshot,
        )

    # ------------------------------------------------------------------ subscriptions

    def open_event_stream(request: Request, session_key: str, channel: Channel) -> StreamingResponse:
        stream = relay_state.registry.open_stream(
            session_key, channel, maxsize=relay_config.queue_size
        )
        LOG.info(
            "SSE subscriber attached session=%s channel=%s subscription=%s",
            session_key,
            channel.value,
            stream.subscription_id,
        )
        return StreamingResponse(
            sse_event_source(request, stream, keepalive=relay_config.sse_keepalive),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(stream.close),
        )

    @app.get("/subscribe-offer/{session_key}")
    async def subscribe_offer(request: Request, session_key: str) -> StreamingResponse:
        return open_event_stream(request, session_key, Channel.OFFER)

    @app.get("/subscribe-answer/{session_key}")
    async def subscribe_answer(request: Request, session_key: str) -> StreamingResponse:
        return open_event_stream(request, session_key, Channel.ANSWER)

    @app.get("/subscribe-iceCandidates/{session_key}")
    async def subscribe_candidates(request: Request, session_key: str) -> StreamingResponse:
        return open_event_stream(request, session_key, Channel.ICE_CANDIDATES)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await sockets.run(websocket)

    @app.websocket("/")
    async def websocket_root(websocket: WebSocket) -> None:
        await sockets.run(websocket)

    return app
