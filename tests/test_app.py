import pytest
import redis
from fastapi.testclient import TestClient

from app import create_app
from backend import MemoryBackend


class FlakyLockBackend(MemoryBackend):
    """Fails to take the pool lock the first `failures` times."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def pool_lock(self, category):
        if self.failures > 0:
            self.failures -= 1
            raise redis.exceptions.LockError("Unable to acquire lock")
        return super().pool_lock(category)


@pytest.fixture
def client():
    with TestClient(create_app(MemoryBackend())) as client:
        yield client


def welcome(websocket):
    message = websocket.receive_json()
    assert message["event"] == "connected"
    return message["data"]["connection_id"]


def join(websocket, category):
    websocket.send_json({"event": "join-category", "data": {"category": category}})


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_lobby_status_empty(client):
    response = client.get("/lobby/")

    assert response.status_code == 200
    assert response.json() == {
        "online_count": 0,
        "categories": [
            {"category": "video", "waiting_count": 0},
            {"category": "text", "waiting_count": 0},
        ],
    }


def test_unknown_room_is_404(client):
    assert client.get("/lobby/rooms/nope").status_code == 404


def test_pair_relay_and_next(client):
    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        id_a, id_b = welcome(ws_a), welcome(ws_b)
        join(ws_a, "video")
        join(ws_b, "video")

        ready_a = ws_a.receive_json()
        ready_b = ws_b.receive_json()
        assert ready_a["event"] == ready_b["event"] == "ready"
        room_id = ready_a["data"]["room"]
        assert ready_b["data"]["room"] == room_id
        assert id_a in room_id and id_b in room_id

        details = client.get(f"/lobby/rooms/{room_id}").json()
        assert details == {"room_id": room_id, "members_count": 2, "is_active": True}

        offer = {"type": "offer", "sdp": "v=0\r\n"}
        ws_a.send_json({"event": "offer", "data": {"room": room_id, "payload": offer}})
        assert ws_b.receive_json() == {"event": "offer", "data": offer}

        ws_b.send_json({"event": "answer", "data": {"room": room_id, "payload": {"type": "answer"}}})
        assert ws_a.receive_json() == {"event": "answer", "data": {"type": "answer"}}

        ws_a.send_json({"event": "next", "data": {"category": "video"}})
        assert ws_b.receive_json() == {"event": "peer-left", "data": {}}

        with client.websocket_connect("/ws") as ws_c:
            welcome(ws_c)
            join(ws_c, "video")
            ready_c = ws_c.receive_json()
            ready_a = ws_a.receive_json()
            assert ready_c["event"] == ready_a["event"] == "ready"
            assert ready_c["data"]["room"] == ready_a["data"]["room"] != room_id


def test_disconnect_notifies_peer(client):
    with client.websocket_connect("/ws") as ws_b:
        welcome(ws_b)
        with client.websocket_connect("/ws") as ws_a:
            welcome(ws_a)
            join(ws_a, "text")
            join(ws_b, "text")
            assert ws_a.receive_json()["event"] == "ready"
            assert ws_b.receive_json()["event"] == "ready"

        assert ws_b.receive_json() == {"event": "peer-left", "data": {}}


def test_malformed_frames_are_ignored(client):
    with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
        welcome(ws_a)
        welcome(ws_b)
        ws_a.send_text("not json")
        ws_a.send_json({"no_event": True})
        ws_a.send_json({"event": "dance", "data": {}})
        join(ws_a, "text")
        join(ws_b, "text")

        assert ws_a.receive_json()["event"] == "ready"
        assert ws_b.receive_json()["event"] == "ready"


def test_backend_error_keeps_connection_open():
    with TestClient(create_app(FlakyLockBackend(failures=1))) as client:
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b:
            welcome(ws_a)
            welcome(ws_b)
            for websocket in (ws_a, ws_a, ws_b, ws_b):
                join(websocket, "video")

            assert ws_a.receive_json()["event"] == "ready"
            assert ws_b.receive_json()["event"] == "ready"


def test_cleanup_runs_when_backend_keeps_failing():
    backend = FlakyLockBackend(failures=1000)
    with TestClient(create_app(backend)) as client:
        with client.websocket_connect("/ws") as websocket:
            connection_id = welcome(websocket)
            join(websocket, "video")

        assert backend.session_count() == 0
        assert backend.publish(connection_id, {"event": "ready", "data": {}}) is False
