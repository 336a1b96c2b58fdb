from client.media import MediaStream, MediaTrack, TrackKind
from client.outbound_policy import allowed_video_peers, build_outbound_stream, wants_video
from shared.protocol import RoomMode


def _local_stream() -> MediaStream:
    return MediaStream([MediaTrack(TrackKind.AUDIO, label="mic"), MediaTrack(TrackKind.VIDEO, label="cam")])


def test_allowed_set_is_first_three_lexicographically() -> None:
    peers = {"B", "D", "A", "C", "E"}
    assert allowed_video_peers(peers) == {"A", "B", "C"}
    assert allowed_video_peers(peers | {"Z"}) == {"A", "B", "C"}
    assert allowed_video_peers(peers - {"A"}) == {"B", "C", "D"}


def test_allowed_set_ignores_duplicates_and_blanks() -> None:
    assert allowed_video_peers(["b", "a", "a", "", "c", "d"]) == {"a", "b", "c"}


def test_mesh_sends_full_stream_to_everyone() -> None:
    stream = _local_stream()
    for target in ["A", "B", "Z"]:
        assert wants_video(RoomMode.MESH, ["A", "B", "C", "D"], target) is True
        assert build_outbound_stream("mesh", stream, ["A", "B", "C", "D"], target) is stream


def test_constrained_mode_sends_audio_only_past_the_cutoff() -> None:
    stream = _local_stream()
    known = ["B", "D", "A", "C"]

    full = build_outbound_stream(RoomMode.CONSTRAINED_FALLBACK, stream, known, "A")
    assert full is stream

    reduced = build_outbound_stream(RoomMode.CONSTRAINED_FALLBACK, stream, known, "D")
    assert reduced is not None and reduced is not stream
    assert reduced.video_tracks() == []
    # the audio track object is shared with the local stream
    assert reduced.audio_tracks() == stream.audio_tracks()


def test_target_is_ranked_with_known_peers() -> None:
    # target not yet linked still counts toward the ranking
    assert wants_video("constrained-fallback", ["B", "C", "D"], "A") is True
    assert wants_video("constrained-fallback", ["A", "B", "C"], "D") is False


def test_no_local_stream_yields_nothing() -> None:
    assert build_outbound_stream(RoomMode.MESH, None, ["A"], "A") is None
