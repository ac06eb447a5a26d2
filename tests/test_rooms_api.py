import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import app
from auth import AuthGate
from backend import InMemoryBackend, get_backend, reset_backend
from registry import RoomRegistry


@pytest.fixture
def client():
    reset_backend(InMemoryBackend(registry=RoomRegistry(AuthGate(iterations=1000))))
    # one portal for the whole test so room locks share an event loop
    with TestClient(app) as test_client:
        yield test_client
    reset_backend()


def create(client, room_id="abc", password="secret123"):
    return client.post(f"/rooms/{room_id}", json={"password": password})


def next_event(ws, event, max_frames=20):
    """Skip frames until one with the given event name arrives."""
    for _ in range(max_frames):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame
    raise AssertionError(f"no {event} frame within {max_frames} frames")


def connect(ws):
    frame = ws.receive_json()
    assert frame["event"] == "connected"
    return frame["data"]["id"]


def send_join(ws, room_id="abc", password="secret123", request_id=1, **extra):
    ws.send_json({"event": "join", "id": request_id, "data": {"roomId": room_id, "password": password, **extra}})


class TestCreateRoom:
    def test_create(self, client):
        response = create(client)
        assert response.status_code == 200
        assert response.json() == {"success": True, "roomId": "abc"}
        assert get_backend().registry.get_room("abc") is not None

    def test_duplicate(self, client):
        create(client)
        response = create(client, password="other")
        assert response.status_code == 409
        assert response.json() == {"error": "Room already exists"}

    def test_missing_password(self, client):
        response = client.post("/rooms/abc", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Password required"}

        response = client.post("/rooms/abc")
        assert response.status_code == 400
        assert response.json() == {"error": "Password required"}

    def test_empty_password(self, client):
        response = create(client, password="")
        assert response.status_code == 400
        assert response.json() == {"error": "Password required"}

    def test_malformed_body(self, client):
        response = client.post("/rooms/abc", json={"password": 12345})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request"}

    def test_create_rate_limit(self, client):
        for room_id in ["a", "b", "c"]:
            assert create(client, room_id).status_code == 200
        response = create(client, "d")
        assert response.status_code == 429
        assert response.json() == {"error": "Too many create requests from this IP, try again later."}
        assert get_backend().registry.get_room("d") is None


def test_health(client):
    create(client)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "rooms": 1, "memberships": 0}


def test_global_rate_limit(client):
    for _ in range(20):
        assert client.get("/health").status_code == 200
    response = client.get("/health")
    assert response.status_code == 429
    assert response.json() == {"error": "Too many requests from this IP, try again later."}
    assert 1 <= int(response.headers["retry-after"]) <= 60


# a frame that never arrives would otherwise block the portal forever
@pytest.mark.timeout(30)
class TestWebSocket:
    def test_wrong_password_closes_session(self, client):
        create(client)
        with client.websocket_connect("/ws") as ws:
            connect(ws)
            send_join(ws, password="nope", request_id=5)
            assert ws.receive_json() == {
                "event": "ack",
                "id": 5,
                "data": {"ok": False, "error": "Invalid room/password", "code": "auth_error"},
            }
            assert ws.receive_json() == {"event": "server-error", "data": {"message": "Invalid room/password"}}
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()
        assert get_backend().registry.get_room("abc").members == {}

    def test_malformed_frame_keeps_session(self, client):
        create(client)
        with client.websocket_connect("/ws") as ws:
            connect(ws)
            ws.send_text("{not json")
            assert ws.receive_json() == {"event": "server-error", "data": {"message": "Malformed frame"}}
            send_join(ws)
            assert ws.receive_json()["data"] == {"ok": True, "roomId": "abc"}

    def test_host_and_viewer_exchange(self, client):
        create(client)
        with client.websocket_connect("/ws") as host, client.websocket_connect("/ws") as viewer:
            host_id = connect(host)
            viewer_id = connect(viewer)

            send_join(host, displayName="Host")
            assert next_event(host, "ack")["data"] == {"ok": True, "roomId": "abc"}
            send_join(viewer)
            assert next_event(viewer, "ack")["data"] == {"ok": True, "roomId": "abc"}
            assert next_event(host, "peer-joined")["data"] == {"peerId": viewer_id}

            host.send_json({
                "event": "relay",
                "id": 2,
                "data": {"roomId": "abc", "target": viewer_id, "data": {"sdp": {"type": "offer", "sdp": "v=0"}}},
            })
            assert next_event(host, "ack")["data"] == {"ok": True, "delivered": 1}
            signal = next_event(viewer, "signal")
            assert signal["data"] == {"from": host_id, "data": {"sdp": {"type": "offer", "sdp": "v=0"}}}

            viewer.send_json({"event": "chat", "id": 3, "data": {"roomId": "abc", "message": "<hello>"}})
            received = next_event(host, "chat")["data"]
            assert received["from"] == viewer_id
            assert received["message"] == "&lt;hello&gt;"
            assert isinstance(received["time"], int)
            assert next_event(viewer, "chat")["data"] == received
            assert next_event(viewer, "ack") == {"event": "ack", "id": 3, "data": {"ok": True, "private": False}}

            assert get_backend().registry.stats() == {"rooms": 1, "memberships": 2}

    def test_disconnect_notifies_peers(self, client):
        create(client)
        with client.websocket_connect("/ws") as host:
            connect(host)
            send_join(host)
            next_event(host, "ack")
            with client.websocket_connect("/ws") as viewer:
                viewer_id = connect(viewer)
                send_join(viewer)
                next_event(viewer, "ack")
                next_event(host, "peer-joined")
            assert next_event(host, "peer-left")["data"] == {"peerId": viewer_id}
            assert get_backend().registry.stats() == {"rooms": 1, "memberships": 1}
            assert get_backend().router.connection_count() == 1
