"""Client side of the chat: keystroke encoding, message rendering and the JSON API."""

from __future__ import annotations

import json
from typing import Any, NamedTuple

import aiohttp

from .models import BACKSPACE, Keystroke, Message, apply_backspaces

_MESSAGE_TEMPLATE = (
    '<div class="message-sender">&lt;Anon&gt;</div>'
    '<div class="message-body" id="message-body-{id}">{body}</div>'
)


class WebSocketUrls(NamedTuple):
    events: str
    key: str


def key_for_input_change(old: str, new: str) -> str | None:
    """Return the key that turned ``old`` into ``new``, or None if nothing changed.

    A shorter value (by encoded length) means a backspace; otherwise the last
    character of the new value is the key, or NUL if the new value is empty.
    """
    if new == old:
        return None
    if len(new.encode("utf-8")) < len(old.encode("utf-8")):
        return BACKSPACE
    return new[-1] if new else "\x00"


def encode_key(key: str) -> bytes:
    """Encode a key for the server: its UTF-8 bytes padded with zeros to four bytes."""
    if not isinstance(key, str) or len(key) != 1:
        raise ValueError(f"key must be a single character, got {key!r}")
    return key.encode("utf-8").ljust(4, b"\x00")


def decode_keystroke(data: bytes) -> Keystroke:
    """Decode a keystroke broadcast by the server."""
    return Keystroke.from_bytes(data)


def apply_key(text: str, key: str) -> str:
    """Apply one key to a message body: backspace removes the last character."""
    if key == BACKSPACE:
        if not text:
            raise ValueError("cannot apply a backspace to an empty message")
        return text[:-1]
    return text + key


def render_message_html(message_id: int, text: str) -> str:
    """Render the element that shows one message, initially hidden."""
    inner = _MESSAGE_TEMPLATE.format(id=message_id, body=apply_backspaces(text))
    return (
        f'<div id="message-{message_id}" class="message message-invisible">'
        f"{inner}</div>"
    )


def is_message_empty(body: str) -> bool:
    """A message whose body is only whitespace is not shown."""
    return not body.strip()


def websocket_urls(protocol: str, hostname: str, port: str | int) -> WebSocketUrls:
    """Build the events and key websocket URLs for a page's location."""
    ws_protocol = "wss:" if protocol == "https:" else "ws:"
    prefix = f"{ws_protocol}//{hostname}:{port}"
    return WebSocketUrls(
        events=f"{prefix}/api/ws/events",
        key=f"{prefix}/api/ws/key",
    )


class ChatClient:
    """Calls the server's JSON endpoints over an aiohttp session."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")

    async def _get_text(self, path: str) -> str:
        async with self.session.get(self.base_url + path) as response:
            return await response.text()

    async def _get_json(self, path: str) -> Any:
        text = await self._get_text(path)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON from {path}: {exc}") from None

    async def get_messages(self) -> list[Message]:
        """Fetch every message the server holds."""
        payload = await self._get_json("/api/msg/get")
        if not isinstance(payload, list):
            raise ValueError("message list must be a JSON array")
        return [Message.from_dict(item) for item in payload]

    async def new_message(self) -> Message:
        """Ask the server to start a new message for this session."""
        return Message.from_dict(await self._get_json("/api/msg/new"))

    async def new_session(self) -> None:
        """Reset the session on the server."""
        text = await self._get_text("/api/session/new")
        if text:
            raise ValueError(f"unexpected session response: {text!r}")