"""Signaling protocol primitives shared between server and client.

Signaling runs over a single TCP stream per client carrying length-prefixed JSON
envelopes. This module centralises the event names, the framing helpers and the
participant records so both halves of the application remain in sync.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, TypedDict

import json
import logging
import re
import struct
import time

logger = logging.getLogger(__name__)


class SignalEvent(str, Enum):
    """Event names exchanged over the signaling channel."""

    # client -> server
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    MEDIA_STATE_CHANGED = "media-state-changed"
    CHAT_EVENT = "chat-event"
    # both directions
    ACTIVE_SPEAKER = "active-speaker"
    # server -> client
    ROOM_STATE = "room-state"
    PEER_JOINED = "peer-joined"
    PARTICIPANTS_UPDATED = "participants-updated"
    PEER_LEFT = "peer-left"
    PEER_MEDIA_UPDATED = "peer-media-updated"
    JOIN_ERROR = "join-error"


class RoomMode(str, Enum):
    """Link topology mode derived from room size."""

    MESH = "mesh"
    CONSTRAINED_FALLBACK = "constrained-fallback"


MAX_PARTICIPANTS = 8
MESH_THRESHOLD = 4
CONSTRAINED_VIDEO_PEERS = 3
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6
MAX_ROOM_ID_LENGTH = 12
MAX_DISPLAY_NAME_LENGTH = 30
DEFAULT_DISPLAY_NAME = "Guest"

RECONNECT_MAX_ATTEMPTS = 2
RECONNECT_BASE_DELAY_SECONDS = 1.2
SPEAKER_SAMPLE_INTERVAL_SECONDS = 0.65
SPEAKER_LEVEL_THRESHOLD = 32.0

DEFAULT_HTTP_PORT = 3000
DEFAULT_SIGNAL_PORT = 3001

DEFAULT_ICE_SERVERS: tuple[dict[str, str], ...] = (
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:global.stun.twilio.com:3478?transport=udp"},
    {"urls": "turn:openrelay.metered.ca:80", "username": "openrelayproject", "credential": "openrelayproject"},
    {"urls": "turn:openrelay.metered.ca:443", "username": "openrelayproject", "credential": "openrelayproject"},
    {
        "urls": "turn:openrelay.metered.ca:443?transport=tcp",
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
)

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def normalize_room_id(raw: Any) -> str:
    """Uppercase, strip everything but A-Z/0-9 and cap at 12 characters."""

    text = "" if raw is None else str(raw)
    return _NON_ALNUM.sub("", text.strip().upper())[:MAX_ROOM_ID_LENGTH]


def sanitize_display_name(raw: Any) -> str:
    text = "" if raw is None else str(raw)
    name = text.strip()[:MAX_DISPLAY_NAME_LENGTH].strip()
    return name or DEFAULT_DISPLAY_NAME


def mode_for_count(member_count: int) -> RoomMode:
    if member_count < MESH_THRESHOLD:
        return RoomMode.MESH
    return RoomMode.CONSTRAINED_FALLBACK


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class MediaState:
    """Mic/camera/screen flags advertised by a participant."""

    mic_enabled: bool = True
    cam_enabled: bool = True
    screen_sharing: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "micEnabled": self.mic_enabled,
            "camEnabled": self.cam_enabled,
            "screenSharing": self.screen_sharing,
        }

    def merge(self, update: Dict[str, Any]) -> None:
        """Apply a partial wire update; unknown keys are ignored."""

        if "micEnabled" in update:
            self.mic_enabled = bool(update["micEnabled"])
        if "camEnabled" in update:
            self.cam_enabled = bool(update["camEnabled"])
        if "screenSharing" in update:
            self.screen_sharing = bool(update["screenSharing"])

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MediaState":
        state = cls()
        if data:
            state.merge(data)
        return state


@dataclass(slots=True)
class Participant:
    """One room member as seen on the wire."""

    socket_id: str
    peer_id: str
    display_name: str = DEFAULT_DISPLAY_NAME
    joined_at: int = field(default_factory=now_ms)
    media_state: MediaState = field(default_factory=MediaState)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "socketId": self.socket_id,
            "peerId": self.peer_id,
            "displayName": self.display_name,
            "joinedAt": self.joined_at,
            "mediaState": self.media_state.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            socket_id=str(data.get("socketId", "")),
            peer_id=str(data["peerId"]),
            display_name=str(data.get("displayName") or DEFAULT_DISPLAY_NAME),
            joined_at=int(data.get("joinedAt") or 0),
            media_state=MediaState.from_dict(data.get("mediaState")),
        )


class SignalEnvelope(TypedDict):
    """Generic representation of a framed signaling message."""

    event: str
    data: Dict[str, Any]


_LENGTH_PREFIX = struct.Struct("!I")
MAX_SIGNAL_FRAME_BYTES = 256 * 1024


class SignalFrameTooLarge(ValueError):
    """A length prefix announced more than ``MAX_SIGNAL_FRAME_BYTES``."""


def encode_signal(event: SignalEvent, data: Dict[str, Any]) -> bytes:
    """Serialize a signaling message using length-prefixed JSON."""

    envelope: SignalEnvelope = {
        "event": event.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return _LENGTH_PREFIX.pack(len(payload)) + payload


def decode_signal_stream(buffer: bytes) -> tuple[list[SignalEnvelope], bytes]:
    """Decode as many complete signaling messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer).
    Raises ``SignalFrameTooLarge`` as soon as a prefix exceeds the frame limit,
    so callers can drop the connection instead of buffering the body.
    """

    offset = 0
    messages: list[SignalEnvelope] = []
    buf_len = len(buffer)

    while offset + _LENGTH_PREFIX.size <= buf_len:
        (length,) = _LENGTH_PREFIX.unpack_from(buffer, offset)
        if length > MAX_SIGNAL_FRAME_BYTES:
            raise SignalFrameTooLarge(f"signaling frame of {length} bytes exceeds {MAX_SIGNAL_FRAME_BYTES}")
        if offset + _LENGTH_PREFIX.size + length > buf_len:
            break
        start = offset + _LENGTH_PREFIX.size
        end = start + length
        offset = end
        try:
            envelope = json.loads(buffer[start:end].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Skipping undecodable signaling frame (%d bytes)", length)
            continue
        if not isinstance(envelope, dict):
            logger.warning("Skipping non-object signaling frame")
            continue
        messages.append(envelope)  # type: ignore[arg-type]

    return messages, buffer[offset:]


def parse_event(raw: Any) -> Optional[SignalEvent]:
    try:
        return SignalEvent(raw)
    except ValueError:
        return None
