"""HTTP and websocket server for live chat, where every keystroke reaches all clients."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import secrets
import time
from datetime import timedelta
from typing import Generic, TypeVar

from aiohttp import WSMsgType, web

from .models import U32_MAX, Event, Keystroke, Message, decode_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHANNEL_CAPACITY = 10_000
PING_INTERVAL = 10.0
SESSION_COOKIE = "id"
SESSION_PATH = "/api"
DEFAULT_SESSION_EXPIRY = timedelta(minutes=10)
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000

WELCOME_TEXT = (
    "Hello! Welcome to Cavalier Extralive Chat. As you type your message, it will "
    "reflect to your friends in real time. No prose, just rash and cavalier messages! "
    "All messages are anonymous and stored in RAM, thus they are securely deleted "
    "when the server restarts. 🫠 你们随便玩儿"
)

TEST_PAGE = '<h1 style="text-align: center;">GET test</h1>'


class Broadcaster(Generic[T]):
    """Fan out items to every subscriber; a full subscriber loses its oldest item."""

    def __init__(self, capacity: int = CHANNEL_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._subscribers: list[asyncio.Queue[T]] = []

    def send(self, item: T) -> int:
        """Deliver an item to all subscribers and return how many received it."""
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                logger.warning("subscriber lagged; dropped oldest item")
            queue.put_nowait(item)
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[T]:
        queue: asyncio.Queue[T] = asyncio.Queue(maxsize=self.capacity)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[T]) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    def __len__(self) -> int:
        return len(self._subscribers)


class SessionStore:
    """In-memory sessions that expire after a period of inactivity."""

    def __init__(self, expiry: timedelta | float = DEFAULT_SESSION_EXPIRY) -> None:
        seconds = expiry.total_seconds() if isinstance(expiry, timedelta) else float(expiry)
        if seconds < 0:
            raise ValueError("expiry must not be negative")
        self.expiry = seconds
        self._last_seen: dict[str, float] = {}

    def _prune(self, now: float) -> None:
        expired = [sid for sid, seen in self._last_seen.items() if now - seen >= self.expiry]
        for sid in expired:
            del self._last_seen[sid]

    def ensure(self, session_id: str | None = None) -> str:
        """Refresh a live session and return its id, or start a new one."""
        now = time.monotonic()
        self._prune(now)
        if session_id is None or session_id not in self._last_seen:
            session_id = secrets.token_urlsafe(16)
        self._last_seen[session_id] = now
        return session_id

    def delete(self, session_id: str) -> None:
        self._last_seen.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._last_seen


class ChatState:
    """Messages, the session-to-message map and the broadcast channels."""

    def __init__(self, welcome: str | None = WELCOME_TEXT) -> None:
        self.messages: list[Message] = []
        if welcome is not None:
            self.messages.append(Message(id=0, text=welcome))
        self.session_to_message: dict[str, int] = {}
        self.keys: Broadcaster[Keystroke] = Broadcaster(CHANNEL_CAPACITY)
        self.events: Broadcaster[Event] = Broadcaster(CHANNEL_CAPACITY)
        self.sessions = SessionStore(DEFAULT_SESSION_EXPIRY)

    def new_message(self, session_id: str | None) -> Message:
        """Start an empty message owned by the session and announce it."""
        if session_id is None:
            raise ValueError("session must be set to make a new message")
        msg_id = len(self.messages)
        if msg_id > U32_MAX:
            raise OverflowError("message id overflows an unsigned 32-bit integer")
        message = Message(id=msg_id, text="")
        self.messages.append(message)
        self.session_to_message[session_id] = msg_id
        if not self.events.send(Event.message_new(dataclasses.replace(message))):
            logger.debug("no listeners for new message %d", msg_id)
        return dataclasses.replace(message)

    def forget_session(self, session_id: str) -> None:
        self.session_to_message.pop(session_id, None)

    def record_key(self, session_id: str, key: str) -> Keystroke:
        """Append a key to the session's current message and broadcast it."""
        try:
            message_id = self.session_to_message[session_id]
        except KeyError:
            raise LookupError(
                "client sent keystrokes without having a message created"
            ) from None
        keystroke = Keystroke(message_id=message_id, key=key)
        self.keys.send(keystroke)
        try:
            self.messages[message_id].text += key
        except IndexError:
            logger.error("message id %d not found in messages", message_id)
        return keystroke


STATE_KEY = web.AppKey("state", ChatState)


def _session_for(request: web.Request) -> str:
    state = request.app[STATE_KEY]
    return state.sessions.ensure(request.cookies.get(SESSION_COOKIE))


def _set_session_cookie(response: web.StreamResponse, state: ChatState, session_id: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        path=SESSION_PATH,
        max_age=int(state.sessions.expiry),
        secure=True,
        httponly=True,
        samesite="Strict",
    )


async def _test_handler(request: web.Request) -> web.Response:
    return web.Response(text=TEST_PAGE, content_type="text/html")


async def _msg_new_handler(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    session_id = _session_for(request)
    try:
        message = state.new_message(session_id)
    except OverflowError as exc:
        return web.json_response(str(exc), status=500)
    response = web.json_response(message.to_dict())
    _set_session_cookie(response, state, session_id)
    return response


async def _msg_get_handler(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    session_id = _session_for(request)
    response = web.json_response([message.to_dict() for message in state.messages])
    _set_session_cookie(response, state, session_id)
    return response


async def _session_new_handler(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    old_id = request.cookies.get(SESSION_COOKIE)
    if old_id is not None:
        state.forget_session(old_id)
        state.sessions.delete(old_id)
    session_id = state.sessions.ensure(None)
    response = web.Response(status=200)
    _set_session_cookie(response, state, session_id)
    return response


async def _forward_events(ws: web.WebSocketResponse, queue: asyncio.Queue[Event]) -> None:
    while True:
        event = await queue.get()
        try:
            await ws.send_str(event.to_json())
        except (ConnectionError, RuntimeError) as exc:
            logger.error("event send error: %s", exc)
            await ws.close()
            return


async def _forward_keys(ws: web.WebSocketResponse, queue: asyncio.Queue[Keystroke]) -> None:
    while True:
        keystroke = await queue.get()
        try:
            await ws.send_bytes(keystroke.to_bytes())
        except (ConnectionError, RuntimeError) as exc:
            logger.error("error sending keystroke: %s", exc)
            await ws.close()
            return


async def _stop(task: asyncio.Task[None]) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def _events_handler(request: web.Request) -> web.WebSocketResponse:
    state = request.app[STATE_KEY]
    ws = web.WebSocketResponse(heartbeat=PING_INTERVAL)
    queue = state.events.subscribe()
    sender = asyncio.create_task(_forward_events(ws, queue))
    try:
        await ws.prepare(request)
        # Reading keeps the connection alive and notices when the client closes.
        async for _msg in ws:
            pass
    finally:
        await _stop(sender)
        state.events.unsubscribe(queue)
    return ws


async def _key_handler(request: web.Request) -> web.WebSocketResponse:
    state = request.app[STATE_KEY]
    session_id = _session_for(request)
    ws = web.WebSocketResponse(heartbeat=PING_INTERVAL)
    _set_session_cookie(ws, state, session_id)
    queue = state.keys.subscribe()
    sender = asyncio.create_task(_forward_keys(ws, queue))
    try:
        await ws.prepare(request)
        async for msg in ws:
            if msg.type != WSMsgType.BINARY:
                logger.warning("invalid ws key message received: %r", msg)
                continue
            try:
                key = decode_key(msg.data)
            except ValueError as exc:
                logger.warning("%s", exc)
                continue
            try:
                state.record_key(session_id, key)
            except LookupError as exc:
                logger.error("%s", exc)
                break
    finally:
        await _stop(sender)
        state.keys.unsubscribe(queue)
        await ws.close()
    return ws


def create_app(state: ChatState | None = None) -> web.Application:
    """Build the web application serving the chat API."""
    app = web.Application()
    app[STATE_KEY] = state if state is not None else ChatState()
    app.router.add_route("*", "/api/ws/events", _events_handler)
    app.router.add_route("*", "/api/ws/key", _key_handler)
    app.router.add_route("*", "/api/msg/new", _msg_new_handler)
    app.router.add_get("/api/msg/get", _msg_get_handler)
    app.router.add_route("*", "/api/session/new", _session_new_handler)
    app.router.add_route("*", "/api/test", _test_handler)
    return app


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="cavalier", description="extralive chat server")
    parser.add_argument("--host", default=DEFAULT_HOST, help="address to bind to")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="port to bind to")
    args = parser.parse_args(argv)
    web.run_app(
        create_app(ChatState()),
        host=args.host,
        port=args.port,
        print=lambda *_: print(f"Listening on {args.host}:{args.port}"),
    )


if __name__ == "__main__":
    main()