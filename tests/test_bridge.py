import asyncio

import pytest

from attendance_notifier.bridge import CONNECTION_CLOSED, BridgeSocket
from attendance_notifier.exceptions import BridgeError


class FakeWebSocket:
    def __init__(self):
        self.frames = []
        self.closed = False

    async def send_json(self, frame):
        self.frames.append(frame)

    async def close(self):
        self.closed = True


def make_socket(timeout=1.0):
    socket = BridgeSocket("ws://bridge.test", request_timeout=timeout)
    socket._ws = FakeWebSocket()
    return socket


async def reply_when_sent(socket, frame_factory):
    while not socket._ws.frames:
        await asyncio.sleep(0)
    socket._handle_frame(frame_factory(socket._ws.frames[-1]))


@pytest.mark.asyncio
async def test_request_resolves_with_result():
    socket = make_socket()
    responder = asyncio.create_task(
        reply_when_sent(socket, lambda req: {"id": req["id"], "result": [{"jid": "x", "exists": True}]})
    )

    result = await socket.on_whatsapp("6281234567890@s.whatsapp.net")
    await responder

    assert result == [{"jid": "x", "exists": True}]
    assert socket._ws.frames[0]["method"] == "onWhatsApp"
    assert socket._ws.frames[0]["params"] == {"jids": ["6281234567890@s.whatsapp.net"]}
    assert socket._pending == {}


@pytest.mark.asyncio
async def test_error_frame_raises_bridge_error_with_status():
    socket = make_socket()
    responder = asyncio.create_task(
        reply_when_sent(
            socket, lambda req: {"id": req["id"], "error": {"message": "rate-overlimit", "statusCode": 429}}
        )
    )

    with pytest.raises(BridgeError) as excinfo:
        await socket.send_message("111@g.us", {"text": "hi"})
    await responder

    assert str(excinfo.value) == "rate-overlimit"
    assert excinfo.value.status_code == 429


@pytest.mark.asyncio
async def test_request_times_out():
    socket = make_socket(timeout=0.01)
    with pytest.raises(BridgeError, match="timed out"):
        await socket.logout()
    assert socket._pending == {}


@pytest.mark.asyncio
async def test_request_without_connection_fails_fast():
    socket = BridgeSocket("ws://bridge.test")
    with pytest.raises(BridgeError) as excinfo:
        await socket.group_fetch_all_participating()
    assert excinfo.value.status_code == CONNECTION_CLOSED


@pytest.mark.asyncio
async def test_event_frames_reach_handlers():
    socket = make_socket()
    seen = []
    async_seen = []

    async def async_handler(data):
        async_seen.append(data)

    socket.on("connection.update", seen.append)
    socket.on("connection.update", async_handler)
    socket._handle_frame({"event": "connection.update", "data": {"connection": "open"}})
    await asyncio.sleep(0)

    assert seen == [{"connection": "open"}]
    assert async_seen == [{"connection": "open"}]


@pytest.mark.asyncio
async def test_unsolicited_response_is_ignored():
    socket = make_socket()
    socket._handle_frame({"id": 999, "result": {}})
    assert socket._pending == {}


@pytest.mark.asyncio
async def test_close_fails_pending_requests_without_event():
    socket = make_socket()
    events = []
    socket.on("connection.update", events.append)
    request = asyncio.create_task(socket.logout())
    while not socket._ws.frames:
        await asyncio.sleep(0)

    ws = socket._ws
    await socket.close()

    with pytest.raises(BridgeError):
        await request
    assert ws.closed is True
    assert events == []
    assert not socket.connected
