import asyncio
import json

import httpx
import pytest

from app import app
from auth import AuthGate
from backend import InMemoryBackend, reset_backend
from client.signaling import SignalingClient, local_failure, websocket_url
from registry import RoomRegistry


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, responder=None):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.responder = responder

    def push(self, event, data=None, request_id=None):
        frame = {"event": event, "data": data}
        if request_id is not None:
            frame["id"] = request_id
        self.incoming.put_nowait(json.dumps(frame))

    def hang_up(self):
        self.incoming.put_nowait(None)

    async def send(self, raw):
        frame = json.loads(raw)
        self.sent.append(frame)
        if self.responder is not None:
            self.responder(self, frame)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self.hang_up()


def ack_everything(sock, frame):
    data = {"ok": True}
    if frame["event"] == "join":
        data["roomId"] = frame["data"]["roomId"]
    sock.push("ack", data, frame["id"])


@pytest.fixture
def sock():
    socket = FakeSocket(responder=ack_everything)
    socket.push("connected", {"id": "me"})
    return socket


@pytest.fixture
async def client(sock):
    urls = []

    async def fake_connect(url):
        urls.append(url)
        return sock

    signaling = SignalingClient("http://server.test/", ack_timeout=0.5, connect=fake_connect)
    signaling.urls = urls
    yield signaling
    await signaling.close()


def test_websocket_url():
    assert websocket_url("http://example.com") == "ws://example.com/ws"
    assert websocket_url("https://example.com/") == "wss://example.com/ws"


async def test_connect_waits_for_confirmation(client):
    assert await client.connect() == "me"
    assert client.connected
    assert client.urls == ["ws://server.test/ws"]


async def test_connect_without_confirmation_fails():
    silent = FakeSocket()

    async def fake_connect(url):
        return silent

    signaling = SignalingClient("http://server.test", ack_timeout=0.05, connect=fake_connect)
    with pytest.raises(ConnectionError):
        await signaling.connect()
    assert silent.closed


async def test_join_frame_and_ack(client, sock):
    await client.connect()
    ack = await client.join("abc", "pw", display_name="Ada")
    assert ack == {"ok": True, "roomId": "abc"}
    assert client.room_id == "abc"
    assert sock.sent == [
        {"event": "join", "id": 1, "data": {"roomId": "abc", "password": "pw", "displayName": "Ada"}}
    ]


async def test_relay_and_chat_carry_room_and_target(client, sock):
    await client.connect()
    await client.join("abc", "pw")
    await client.relay({"candidate": {"c": 1}}, target="peer")
    await client.chat("hello")
    assert sock.sent[1]["data"] == {"roomId": "abc", "data": {"candidate": {"c": 1}}, "target": "peer"}
    assert sock.sent[2]["data"] == {"roomId": "abc", "message": "hello"}
    assert [f["id"] for f in sock.sent] == [1, 2, 3]


async def test_failed_join_keeps_room_unset(sock, client):
    def reject(socket, frame):
        socket.push("ack", {"ok": False, "error": "Invalid room/password", "code": "auth_error"}, frame["id"])

    sock.responder = reject
    await client.connect()
    ack = await client.join("abc", "wrong")
    assert ack["code"] == "auth_error"
    assert client.room_id is None


async def test_missing_ack_times_out(client, sock):
    sock.responder = None
    client.ack_timeout = 0.05
    await client.connect()
    ack = await client.request("chat", {"roomId": "abc", "message": "hi"})
    assert ack == local_failure("Request timed out")


async def test_request_before_connect():
    signaling = SignalingClient("http://server.test")
    assert await signaling.request("chat", {}) == local_failure("Not connected")


async def test_events_dispatched_in_order(client, sock):
    seen = []
    done = asyncio.Event()

    async def on_signal(data):
        await asyncio.sleep(0)
        seen.append(data["n"])
        if len(seen) == 3:
            done.set()

    client.on("signal", on_signal)
    await client.connect()
    for n in range(3):
        sock.push("signal", {"n": n})
    await asyncio.wait_for(done.wait(), 1)
    assert seen == [0, 1, 2]


async def test_handler_can_await_a_request(client, sock):
    acks = []
    done = asyncio.Event()

    async def on_peer_joined(data):
        acks.append(await client.relay({"sdp": {"type": "offer"}}, target=data["peerId"]))
        done.set()

    client.on("peer-joined", on_peer_joined)
    await client.connect()
    sock.push("peer-joined", {"peerId": "v1"})
    await asyncio.wait_for(done.wait(), 1)
    assert acks == [{"ok": True}]


async def test_failing_handler_does_not_stop_dispatch(client, sock):
    seen = []
    done = asyncio.Event()

    async def broken(data):
        raise RuntimeError("boom")

    async def on_chat(data):
        seen.append(data)
        done.set()

    client.on("peer-left", broken)
    client.on("chat", on_chat)
    await client.connect()
    sock.push("peer-left", {"peerId": "x"})
    sock.push("chat", {"message": "still here"})
    await asyncio.wait_for(done.wait(), 1)
    assert seen == [{"message": "still here"}]


async def test_server_hang_up_fails_pending_and_reports_disconnect(client, sock):
    sock.responder = None
    disconnected = asyncio.Event()

    async def on_disconnect(data):
        disconnected.set()

    client.on("disconnect", on_disconnect)
    await client.connect()
    pending = asyncio.create_task(client.request("chat", {"roomId": "abc", "message": "hi"}))
    await asyncio.sleep(0)
    sock.hang_up()

    assert await pending == local_failure("Connection closed")
    await asyncio.wait_for(disconnected.wait(), 1)
    assert not client.connected


async def test_close_fails_pending_requests(client, sock):
    sock.responder = None
    await client.connect()
    pending = asyncio.create_task(client.request("chat", {"roomId": "abc", "message": "hi"}))
    await asyncio.sleep(0)
    await client.close()
    assert await pending == local_failure("Connection closed")
    assert sock.closed


class TestCreateRoom:
    @pytest.fixture(autouse=True)
    def fresh_backend(self):
        reset_backend(InMemoryBackend(registry=RoomRegistry(AuthGate(iterations=1000))))
        yield
        reset_backend()

    @pytest.fixture
    def http_client(self):
        return SignalingClient("http://testserver", http_transport=httpx.ASGITransport(app=app))

    async def test_create_room(self, http_client):
        assert await http_client.create_room("my room", "pw") == {"success": True, "roomId": "my room"}

    async def test_create_room_conflict(self, http_client):
        await http_client.create_room("abc", "pw")
        assert await http_client.create_room("abc", "pw") == {"error": "Room already exists"}
