import random

import pytest

from server.session_registry import InvalidInput, JoinError, RoomFull, SessionRegistry
from shared.protocol import ROOM_CODE_ALPHABET, RoomMode


def test_generated_codes_are_well_formed_and_unique() -> None:
    registry = SessionRegistry(rng=random.Random(7))
    codes = {registry.create_room() for _ in range(200)}
    assert len(codes) == 200
    for code in codes:
        assert len(code) == 6
        assert set(code) <= set(ROOM_CODE_ALPHABET)
        assert registry.has_room(code)


def test_code_generation_retries_on_collision() -> None:
    class Scripted(random.Random):
        def __init__(self) -> None:
            super().__init__()
            self._picks = iter("AAAAAA" + "AAAAAA" + "BBBBBB")

        def choice(self, seq):  # type: ignore[override]
            return next(self._picks)

    registry = SessionRegistry(rng=Scripted())
    assert registry.create_room() == "AAAAAA"
    assert registry.create_room() == "BBBBBB"


def test_describe_unknown_room_is_not_an_error() -> None:
    registry = SessionRegistry()
    info = registry.describe_room("zzzzzz")
    assert info == {"exists": False, "roomId": "ZZZZZZ", "participants": 0, "capacity": 8, "mode": "mesh"}
    assert registry.has_room("ZZZZZZ") is False


def test_join_creates_room_and_reports_mode() -> None:
    registry = SessionRegistry()
    results = [registry.join(f"s{i}", "abc-def", f"p{i}", f"User {i}") for i in range(4)]

    assert [result.mode for result in results] == [RoomMode.MESH] * 3 + [RoomMode.CONSTRAINED_FALLBACK]
    assert results[-1].room_id == "ABCDEF"
    assert [p["peerId"] for p in results[-1].participants] == ["p0", "p1", "p2", "p3"]
    info = registry.describe_room("ABCDEF")
    assert info["exists"] is True
    assert info["participants"] == 4
    assert info["mode"] == "constrained-fallback"


def test_room_exists_only_while_it_has_members() -> None:
    registry = SessionRegistry()
    registry.join("s1", "ROOM1", "p1")
    registry.join("s2", "ROOM1", "p2")
    assert registry.has_room("ROOM1")

    first = registry.leave("s1", "ROOM1")
    assert first is not None and first.room_closed is False
    assert registry.has_room("ROOM1")
    assert [p["peerId"] for p in first.participants] == ["p2"]

    second = registry.leave("s2")
    assert second is not None and second.room_closed is True
    assert registry.has_room("ROOM1") is False
    assert registry.snapshot()["room_count"] == 0


def test_leave_unknown_socket_is_noop() -> None:
    registry = SessionRegistry()
    registry.join("s1", "ROOM1", "p1")
    assert registry.leave("ghost", "ROOM1") is None
    assert registry.leave("ghost") is None
    assert registry.members("ROOM1") == ["s1"]


@pytest.mark.parametrize(
    "room_id, peer_id",
    [("", "p1"), ("---", "p1"), ("ROOM1", ""), ("ROOM1", "   "), ("ROOM1", None)],
)
def test_invalid_join_creates_nothing(room_id, peer_id) -> None:
    registry = SessionRegistry()
    with pytest.raises(InvalidInput):
        registry.join("s1", room_id, peer_id)
    assert registry.snapshot()["room_count"] == 0


def test_ninth_join_is_rejected() -> None:
    registry = SessionRegistry()
    for i in range(8):
        registry.join(f"s{i}", "FULL", f"p{i}")
    with pytest.raises(RoomFull) as excinfo:
        registry.join("s8", "FULL", "p8")
    assert isinstance(excinfo.value, JoinError)
    assert str(excinfo.value) == "Room is full (8 participants max)."
    assert len(registry.members("FULL")) == 8


def test_media_state_updates_are_merged() -> None:
    registry = SessionRegistry()
    registry.join("s1", "ROOM1", "p1", "Ada")
    updated = registry.update_media_state("s1", "ROOM1", {"camEnabled": False})
    assert updated is not None
    assert updated["mediaState"] == {"micEnabled": True, "camEnabled": False, "screenSharing": False}
    assert registry.update_media_state("ghost", "ROOM1", {"camEnabled": False}) is None
    assert registry.update_media_state("s1", "NOPE", {"camEnabled": False}) is None
