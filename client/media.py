"""Boundary types for the external real-time media engine.

Capture, codecs, ICE/DTLS/SRTP and relays all live inside the engine. The call
core only needs to open/answer links with a given stream, swap the outgoing
video track, hear about stream/close/error events and route encoded frames
through the frame cipher. Engines implement the protocols below.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence


class TrackKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class FrameDirection(str, Enum):
    """Which side of a link a frame transform sits on."""

    ENCODE = "encode"
    DECODE = "decode"


@dataclass(eq=False, slots=True)
class MediaTrack:
    kind: TrackKind
    track_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    label: str = ""
    enabled: bool = True
    ended: bool = False

    def stop(self) -> None:
        self.ended = True


class MediaStream:
    """An ordered set of tracks; the same track objects may appear in several streams."""

    def __init__(self, tracks: Iterable[MediaTrack] = (), *, stream_id: Optional[str] = None) -> None:
        self.stream_id = stream_id or uuid.uuid4().hex
        self._tracks: List[MediaTrack] = list(tracks)

    def tracks(self) -> List[MediaTrack]:
        return list(self._tracks)

    def audio_tracks(self) -> List[MediaTrack]:
        return [track for track in self._tracks if track.kind == TrackKind.AUDIO]

    def video_tracks(self) -> List[MediaTrack]:
        return [track for track in self._tracks if track.kind == TrackKind.VIDEO]

    def audio_only(self) -> "MediaStream":
        """Derivative stream sharing this stream's audio tracks and no video."""

        return MediaStream(self.audio_tracks())

    def __repr__(self) -> str:
        kinds = ",".join(track.kind.value for track in self._tracks)
        return f"MediaStream({self.stream_id[:8]}, [{kinds}])"


@dataclass(slots=True)
class EncodedFrame:
    data: bytes
    kind: TrackKind = TrackKind.VIDEO
    timestamp: int = 0


class LinkEventKind(str, Enum):
    STREAM = "stream"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LinkEvent:
    kind: LinkEventKind
    stream: Optional[MediaStream] = None
    error: Optional[str] = None


LinkEventSink = Callable[[LinkEvent], None]
FrameSink = Callable[[EncodedFrame], None]


@dataclass(slots=True)
class FrameRoute:
    """One insertable-stream hook on a link: frames for ``kind`` flowing in ``direction``.

    ``deliver`` receives frames after transformation. ``attach`` is given the
    callable the engine must feed raw frames into.
    """

    direction: FrameDirection
    kind: TrackKind
    deliver: FrameSink
    attach: Callable[[FrameSink], None]


class LinkHandle(Protocol):
    """A single peer link owned by the media engine.

    Engines may additionally expose ``set_codec_preferences(codecs)`` and
    ``frame_routes() -> Iterable[FrameRoute]``; both are optional.
    """

    peer_id: str

    def replace_video_track(self, track: Optional[MediaTrack]) -> Awaitable[None]:
        ...

    def close(self) -> None:
        ...


class IncomingLink(Protocol):
    peer_id: str
    metadata: Dict[str, Any]

    def answer(self, stream: Optional[MediaStream], events: LinkEventSink) -> LinkHandle:
        ...

    def reject(self) -> None:
        ...


class AudioMeter(Protocol):
    def byte_frequency_data(self) -> Sequence[int]:
        ...


class MediaEngine(Protocol):
    """Outbound side of the engine.

    Engines carry an ``ice_servers`` list of STUN/TURN entries shaped like
    ``DEFAULT_ICE_SERVERS`` and use it for every link they open or answer.
    Engines may additionally expose ``video_codec_capabilities() -> Sequence[str]``
    (MIME types) and ``audio_meter(stream) -> Optional[AudioMeter]``.
    """

    def call(
        self,
        peer_id: str,
        stream: MediaStream,
        *,
        metadata: Dict[str, Any],
        events: LinkEventSink,
    ) -> Optional[LinkHandle]:
        ...
