import socket

import httpx
import pytest
from fastapi.testclient import TestClient

from client.rooms_api import RoomsClient
from server.http_api import HttpApi, bind_listen_socket
from server.session_registry import SessionRegistry


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_create_and_describe_room() -> None:
    registry = SessionRegistry()
    client = TestClient(HttpApi(registry).app)

    created = client.post("/api/rooms")
    assert created.status_code == 201
    room_id = created.json()["roomId"]
    assert len(room_id) == 6

    described = client.get(f"/api/rooms/{room_id.lower()}")
    assert described.status_code == 200
    assert described.json() == {
        "exists": True,
        "roomId": room_id,
        "participants": 0,
        "capacity": 8,
        "mode": "mesh",
    }


def test_describe_unknown_and_invalid_rooms() -> None:
    client = TestClient(HttpApi(SessionRegistry()).app)

    unknown = client.get("/api/rooms/NOPE42")
    assert unknown.status_code == 200
    assert unknown.json()["exists"] is False

    invalid = client.get("/api/rooms/---")
    assert invalid.status_code == 400
    assert invalid.json() == {"error": "Invalid room id"}


def test_health_reports_room_count() -> None:
    registry = SessionRegistry()
    registry.join("s1", "ROOM1", "p1")
    client = TestClient(HttpApi(registry).app)

    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["rooms"] == 1
    assert body["uptime"] >= 0


@pytest.mark.anyio
async def test_rooms_client_against_app() -> None:
    registry = SessionRegistry()
    registry.join("s1", "ROOM1", "p1")
    transport = httpx.ASGITransport(app=HttpApi(registry).app)

    async with RoomsClient("http://testserver", transport=transport) as rooms:
        room_id = await rooms.create_room()
        assert registry.has_room(room_id)

        info = await rooms.describe_room("room1")
        assert info["exists"] is True
        assert info["participants"] == 1

        health = await rooms.health()
        assert health["rooms"] == 2

        with pytest.raises(httpx.HTTPStatusError):
            await rooms.describe_room("---")


def test_busy_port_falls_back_to_ephemeral() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        taken = busy.getsockname()[1]

        sock = bind_listen_socket("127.0.0.1", taken)
        try:
            port = sock.getsockname()[1]
            assert port != taken
            assert port > 0
        finally:
            sock.close()
