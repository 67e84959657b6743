import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from cavalier.client import (
    ChatClient,
    apply_key,
    decode_keystroke,
    encode_key,
    is_message_empty,
    key_for_input_change,
    render_message_html,
    websocket_urls,
)
from cavalier.models import BACKSPACE, Keystroke, Message, decode_key
from cavalier.server import ChatState, create_app


def test_unchanged_input_gives_no_key():
    assert key_for_input_change("abc", "abc") is None


def test_shorter_input_is_backspace():
    assert key_for_input_change("ab", "a") == BACKSPACE


def test_longer_input_gives_last_char():
    assert key_for_input_change("ab", "abz") == "z"


def test_same_length_change_gives_last_char():
    assert key_for_input_change("a", "b") == "b"


def test_encode_key_ascii_wire_bytes():
    assert encode_key("a") == b"a\x00\x00\x00"


def test_encode_key_round_trips_through_server_decoder():
    assert decode_key(encode_key("x")) == "x"
    assert decode_key(encode_key(BACKSPACE)) == BACKSPACE


def test_encode_key_multibyte_is_padded_utf8():
    encoded = encode_key("é")
    assert len(encoded) == 4
    assert encoded.startswith("é".encode("utf-8"))


def test_encode_key_rejects_multiple_chars():
    with pytest.raises(ValueError):
        encode_key("ab")


def test_decode_keystroke_round_trip():
    keystroke = Keystroke(message_id=3, key="q")
    assert decode_keystroke(keystroke.to_bytes()) == keystroke


def test_decode_keystroke_rejects_short_data():
    with pytest.raises(ValueError):
        decode_keystroke(b"\x01\x00")


def test_apply_key_appends_and_deletes():
    assert apply_key("a", "b") == "ab"
    assert apply_key("ab", BACKSPACE) == "a"


def test_apply_backspace_on_empty_raises():
    with pytest.raises(ValueError):
        apply_key("", BACKSPACE)


def test_render_message_html_structure():
    html = render_message_html(7, "ab\x08c")
    assert 'id="message-body-7"' in html
    assert 'id="message-7"' in html
    assert "message message-invisible" in html
    assert "&lt;Anon&gt;" in html
    assert ">ac</div>" in html
    assert BACKSPACE not in html


def test_is_message_empty():
    assert is_message_empty("  \n\t")
    assert is_message_empty("")
    assert not is_message_empty(" x ")


def test_websocket_urls_secure():
    urls = websocket_urls("https:", "example.com", "443")
    assert urls.events == "wss://example.com:443/api/ws/events"
    assert urls.key.startswith("wss://example.com:443")
    assert urls.key.endswith("/api/ws/key")


def test_websocket_urls_plain():
    urls = websocket_urls("http:", "localhost", 3000)
    assert urls.events.startswith("ws://localhost:3000")
    assert urls.key.startswith("ws://")


@pytest.mark.asyncio
async def test_get_messages_returns_server_messages():
    state = ChatState()
    async with TestServer(create_app(state)) as server, aiohttp.ClientSession() as http:
        client = ChatClient(http, str(server.make_url("/")))
        messages = await client.get_messages()
    assert messages == state.messages


@pytest.mark.asyncio
async def test_new_message_creates_empty_message():
    state = ChatState()
    async with TestServer(create_app(state)) as server, aiohttp.ClientSession() as http:
        client = ChatClient(http, str(server.make_url("/")))
        message = await client.new_message()
        messages = await client.get_messages()
    assert message == Message(id=1, text="")
    assert messages[-1] == message
    assert len(state.messages) == 2


@pytest.mark.asyncio
async def test_new_session_keeps_messages():
    state = ChatState(welcome=None)
    async with TestServer(create_app(state)) as server, aiohttp.ClientSession() as http:
        client = ChatClient(http, str(server.make_url("/")))
        await client.new_session()
        messages = await client.get_messages()
    assert messages == []


def _text_app(path, text):
    async def handler(request):
        return web.Response(text=text)

    app = web.Application()
    app.router.add_get(path, handler)
    return app


@pytest.mark.asyncio
async def test_new_session_rejects_non_empty_body():
    app = _text_app("/api/session/new", "unexpected")
    async with TestServer(app) as server, aiohttp.ClientSession() as http:
        client = ChatClient(http, str(server.make_url("/")))
        with pytest.raises(ValueError):
            await client.new_session()


@pytest.mark.asyncio
async def test_get_messages_rejects_invalid_json():
    app = _text_app("/api/msg/get", "not json")
    async with TestServer(app) as server, aiohttp.ClientSession() as http:
        client = ChatClient(http, str(server.make_url("/")))
        with pytest.raises(ValueError):
            await client.get_messages()