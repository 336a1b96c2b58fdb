import struct

import pytest

from shared.protocol import (
    MAX_SIGNAL_FRAME_BYTES,
    MediaState,
    Participant,
    RoomMode,
    SignalEvent,
    SignalFrameTooLarge,
    decode_signal_stream,
    encode_signal,
    mode_for_count,
    normalize_room_id,
    parse_event,
    sanitize_display_name,
)


def test_encode_decode_signal_roundtrip() -> None:
    payload = {"roomId": "ABCDEF", "peerId": "p1"}
    encoded = encode_signal(SignalEvent.JOIN_ROOM, payload)
    messages, remaining = decode_signal_stream(encoded)
    assert remaining == b""
    assert len(messages) == 1
    assert messages[0]["event"] == "join-room"
    assert messages[0]["data"] == payload


def test_decode_keeps_partial_frame_for_next_read() -> None:
    first = encode_signal(SignalEvent.LEAVE_ROOM, {"roomId": "ABCDEF"})
    second = encode_signal(SignalEvent.CHAT_EVENT, {"message": "hi"})
    messages, remaining = decode_signal_stream(first + second[:7])
    assert [message["event"] for message in messages] == ["leave-room"]
    assert remaining == second[:7]

    messages, remaining = decode_signal_stream(remaining + second[7:])
    assert [message["event"] for message in messages] == ["chat-event"]
    assert remaining == b""


def test_decode_skips_garbage_frames() -> None:
    garbage = b"not json"
    framed_garbage = struct.pack("!I", len(garbage)) + garbage
    framed_list = struct.pack("!I", 2) + b"[]"
    good = encode_signal(SignalEvent.ACTIVE_SPEAKER, {"peerId": "p2"})
    messages, remaining = decode_signal_stream(framed_garbage + framed_list + good)
    assert remaining == b""
    assert [message["event"] for message in messages] == ["active-speaker"]


def test_decode_rejects_oversized_length_prefix() -> None:
    good = encode_signal(SignalEvent.LEAVE_ROOM, {"roomId": "ABCDEF"})
    with pytest.raises(SignalFrameTooLarge):
        decode_signal_stream(good + struct.pack("!I", MAX_SIGNAL_FRAME_BYTES + 1))

    at_limit = struct.pack("!I", MAX_SIGNAL_FRAME_BYTES)
    messages, remaining = decode_signal_stream(at_limit)
    assert messages == []
    assert remaining == at_limit


def test_normalize_room_id() -> None:
    assert normalize_room_id(" ab-cd ef ") == "ABCDEF"
    assert normalize_room_id("abcdefghijklmnop") == "ABCDEFGHIJKL"
    assert normalize_room_id("---") == ""
    assert normalize_room_id(None) == ""


def test_sanitize_display_name() -> None:
    assert sanitize_display_name("  Ada  ") == "Ada"
    assert sanitize_display_name("") == "Guest"
    assert sanitize_display_name(None) == "Guest"
    assert sanitize_display_name("x" * 40) == "x" * 30


def test_mode_threshold() -> None:
    assert [mode_for_count(n) for n in range(1, 4)] == [RoomMode.MESH] * 3
    assert mode_for_count(4) == RoomMode.CONSTRAINED_FALLBACK
    assert mode_for_count(8) == RoomMode.CONSTRAINED_FALLBACK


def test_parse_event_rejects_unknown_names() -> None:
    assert parse_event("peer-left") == SignalEvent.PEER_LEFT
    assert parse_event("offer") is None
    assert parse_event(None) is None


def test_participant_wire_format() -> None:
    participant = Participant(socket_id="s1", peer_id="p1", display_name="Ada", joined_at=1000)
    data = participant.to_dict()
    assert data == {
        "socketId": "s1",
        "peerId": "p1",
        "displayName": "Ada",
        "joinedAt": 1000,
        "mediaState": {"micEnabled": True, "camEnabled": True, "screenSharing": False},
    }
    restored = Participant.from_dict(data)
    assert restored.peer_id == "p1"
    assert restored.media_state == MediaState()


def test_media_state_merge_is_partial() -> None:
    state = MediaState()
    state.merge({"micEnabled": False, "unknown": 1})
    assert state.to_dict() == {"micEnabled": False, "camEnabled": True, "screenSharing": False}
