"""Data shared by the chat server and client: messages, keystrokes and events."""

from __future__ import annotations

import enum
import json
import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

BACKSPACE = "\x08"
U32_MAX = 0xFFFF_FFFF

_KEY_FORMAT = "<I"
_KEYSTROKE_FORMAT = "<II"
_KEY_SIZE = struct.calcsize(_KEY_FORMAT)
_KEYSTROKE_SIZE = struct.calcsize(_KEYSTROKE_FORMAT)


def _check_u32(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer, got {type(value).__name__}")
    if not 0 <= value <= U32_MAX:
        raise ValueError(f"{name} {value} does not fit in an unsigned 32-bit integer")
    return value


def _char_from_code(code: int) -> str:
    """Return the character for a Unicode scalar value, rejecting surrogates."""
    if code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
        raise ValueError(f"{code:#x} is not a valid Unicode scalar value")
    return chr(code)


def _check_key(key: Any) -> str:
    if not isinstance(key, str) or len(key) != 1:
        raise ValueError(f"key must be a single character, got {key!r}")
    _char_from_code(ord(key))
    return key


@dataclass
class Message:
    """A chat message; its text holds every keystroke, backspaces included."""

    id: int
    text: str = ""

    def __post_init__(self) -> None:
        _check_u32(self.id, "message id")
        if not isinstance(self.text, str):
            raise TypeError("message text must be a string")

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        if not isinstance(data, Mapping):
            raise ValueError("message must be a JSON object")
        try:
            msg_id = data["id"]
            text = data["text"]
        except KeyError as exc:
            raise ValueError(f"message is missing field {exc.args[0]!r}") from None
        if not isinstance(text, str):
            raise ValueError("message text must be a string")
        try:
            return cls(id=msg_id, text=text)
        except TypeError as exc:
            raise ValueError(str(exc)) from None


@dataclass(frozen=True)
class Keystroke:
    """A single key typed into a message."""

    message_id: int
    key: str

    def __post_init__(self) -> None:
        _check_u32(self.message_id, "message id")
        _check_key(self.key)

    def to_bytes(self) -> bytes:
        """Wire form sent to clients: key code then message id, both little-endian u32."""
        return struct.pack(_KEYSTROKE_FORMAT, ord(self.key), self.message_id)

    @classmethod
    def from_bytes(cls, data: bytes) -> Keystroke:
        if len(data) != _KEYSTROKE_SIZE:
            raise ValueError(
                f"keystroke must be {_KEYSTROKE_SIZE} bytes, got {len(data)}"
            )
        code, message_id = struct.unpack(_KEYSTROKE_FORMAT, bytes(data))
        return cls(message_id=message_id, key=_char_from_code(code))


class EventKind(enum.Enum):
    MESSAGE_NEW = "MessageNew"
    MESSAGE_END = "MessageEnd"


@dataclass(frozen=True)
class Event:
    """A live update pushed from the server to clients."""

    kind: EventKind
    message: Message | None = None

    def __post_init__(self) -> None:
        if self.kind is EventKind.MESSAGE_NEW and self.message is None:
            raise ValueError("a MessageNew event needs a message")
        if self.kind is EventKind.MESSAGE_END and self.message is not None:
            raise ValueError("a MessageEnd event carries no message")

    @classmethod
    def message_new(cls, message: Message) -> Event:
        return cls(EventKind.MESSAGE_NEW, message)

    @classmethod
    def message_end(cls) -> Event:
        return cls(EventKind.MESSAGE_END)

    def to_json(self) -> str:
        payload: dict[str, Any] = {"event": self.kind.value}
        if self.message is not None:
            payload["data"] = self.message.to_dict()
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> Event:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid event JSON: {exc}") from None
        if not isinstance(payload, dict) or "event" not in payload:
            raise ValueError("event JSON must be an object with an 'event' field")
        try:
            kind = EventKind(payload["event"])
        except ValueError:
            raise ValueError(f"unknown event {payload['event']!r}") from None
        if kind is EventKind.MESSAGE_END:
            return cls.message_end()
        if "data" not in payload:
            raise ValueError("MessageNew event is missing 'data'")
        return cls.message_new(Message.from_dict(payload["data"]))


def decode_key(data: bytes) -> str:
    """Decode a key sent by a client: exactly four bytes, a little-endian code point."""
    if len(data) != _KEY_SIZE:
        raise ValueError(f"invalid character length: {len(data)} bytes")
    (code,) = struct.unpack(_KEY_FORMAT, bytes(data))
    try:
        return _char_from_code(code)
    except ValueError:
        raise ValueError(f"bad key received: {bytes(data)!r}") from None


def apply_backspaces(text: str) -> str:
    """Return the visible text, with each backspace removing the character before it."""
    chars: list[str] = []
    for char in text:
        if char == BACKSPACE:
            if chars:
                chars.pop()
        else:
            chars.append(char)
    return "".join(chars)