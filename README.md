# cavalier

Extralive chat. As you type, every keystroke goes out to everyone else in
real time, with no editing and no second thoughts. Backspaces are sent as
keystrokes too. Messages are anonymous and kept only in memory, so they are
gone when the server stops.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Running the server

```
cavalier
```

The server listens on `127.0.0.1:3000` by default. It takes two options:

* `--host` – the address to bind to
* `--port` – the port to bind to

Run `cavalier --help` to see them. The same entry point is
`cavalier.server:main`, which takes an optional argument list.

When it starts, the server holds one message, id `0`, with a welcome text.

It serves these endpoints under `/api`:

| Path               | Purpose                                                   |
|--------------------|-----------------------------------------------------------|
| `/api/ws/events`   | WebSocket sending JSON events such as a new message       |
| `/api/ws/key`      | WebSocket carrying keystrokes as binary frames both ways  |
| `/api/msg/new`     | Starts a new, empty message for the caller's session      |
| `/api/msg/get`     | Returns every message as a JSON array (GET only)          |
| `/api/session/new` | Starts a fresh session, dropping the old message link     |
| `/api/test`        | A small HTML page showing that the server is up           |

Sessions are kept in memory and identified by an `id` cookie on the path
`/api`. The cookie is marked secure and HTTP-only, and a session expires
after ten minutes without a request. Both websockets are pinged every ten
seconds.

A keystroke received on `/api/ws/key` is added to the text of the message
that the session last created with `/api/msg/new`, and is broadcast to every
connected key socket, the sender's included. A session that sends keys
before creating a message has its key socket closed.

### Wire formats

* A keystroke from a client is a 4-byte frame that the server reads as a
  little-endian Unicode code point. Frames of any other length, and codes
  that are not valid characters, are ignored.
* A keystroke from the server is an 8-byte frame: the key's code point, then
  the message id, both 32-bit little endian.
* Events are JSON of the form `{"event":"MessageNew","data":{"id":1,"text":""}}`
  or `{"event":"MessageEnd"}`.
* A backspace is the character `"\x08"`.

## Using it as a library

`cavalier.models` holds `Message`, `Keystroke` and `Event`:

* `Message.to_dict()` / `Message.from_dict(data)`
* `Keystroke.to_bytes()` / `Keystroke.from_bytes(data)` for the 8-byte frame
* `Event.message_new(message)`, `Event.message_end()`, `Event.to_json()` and
  `Event.from_json(text)`
* `decode_key(data)` for the 4-byte client frame
* `apply_backspaces(text)`, which turns a raw message into the text it shows

Malformed input raises `ValueError`.

`cavalier.server` exposes:

* `ChatState`, holding the messages, the session-to-message map and the
  broadcast channels, with `new_message(session_id)`,
  `forget_session(session_id)` and `record_key(session_id, key)`
* `Broadcaster`, a fan-out channel where a full subscriber loses its oldest
  item, and `SessionStore`, the expiring session store
* `create_app(state)`, which returns an aiohttp application you can run or
  embed yourself

`cavalier.client` holds `ChatClient`, which talks to the JSON endpoints
through an aiohttp session:

```python
import asyncio
import aiohttp
from cavalier.client import ChatClient

async def demo():
    async with aiohttp.ClientSession() as session:
        client = ChatClient(session, "http://127.0.0.1:3000")
        await client.new_session()
        for message in await client.get_messages():
            print(message.id, message.text)
        mine = await client.new_message()
        print("writing message", mine.id)

asyncio.run(demo())
```

The same module has helpers for a chat page:

* `key_for_input_change(old, new)` – the key that turned one input value into
  another (a backspace if it got shorter, `None` if nothing changed)
* `encode_key(key)` – the key's UTF-8 bytes padded with zeros to four bytes;
  this matches the server's code-point reading only for ASCII keys
* `decode_keystroke(data)` – an 8-byte server frame as a `Keystroke`
* `apply_key(text, key)` – apply one key to a message body
* `render_message_html(message_id, text)` – the HTML element for a message
* `is_message_empty(body)` – whether a body is only whitespace
* `websocket_urls(protocol, hostname, port)` – the events and key socket URLs

## What it does not do

* There is no chat page: the server serves only the `/api` endpoints and no
  HTML, script or style files for a browser.
* `cavalier.client` does not open or drive the websockets; it offers the JSON
  calls and the encoding and rendering helpers only.
* Nothing is stored on disk. Messages and sessions live in memory and are
  lost when the server stops.