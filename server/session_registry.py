from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from shared.protocol import (
    MAX_PARTICIPANTS,
    ROOM_CODE_ALPHABET,
    ROOM_CODE_LENGTH,
    MediaState,
    Participant,
    RoomMode,
    mode_for_count,
    normalize_room_id,
    sanitize_display_name,
)

logger = logging.getLogger(__name__)


class JoinError(Exception):
    """Base class for rejected join attempts; ``str(exc)`` is shown to the user."""


class InvalidInput(JoinError, ValueError):
    def __init__(self, message: str = "Invalid room or peer id.") -> None:
        super().__init__(message)


class RoomFull(JoinError):
    def __init__(self, message: str = f"Room is full ({MAX_PARTICIPANTS} participants max).") -> None:
        super().__init__(message)


@dataclass(slots=True)
class Room:
    room_id: str
    created_at: float = field(default_factory=lambda: time.time())
    members: Set[str] = field(default_factory=set)
    participants: Dict[str, Participant] = field(default_factory=dict)

    @property
    def mode(self) -> RoomMode:
        return mode_for_count(len(self.members))

    def roster(self) -> List[Dict[str, Any]]:
        # participants keeps join order; members is only used for membership tests
        return [participant.to_dict() for socket_id, participant in self.participants.items() if socket_id in self.members]


@dataclass(slots=True)
class JoinResult:
    room_id: str
    participant: Dict[str, Any]
    participants: List[Dict[str, Any]]
    mode: RoomMode
    capacity: int = MAX_PARTICIPANTS


@dataclass(slots=True)
class LeaveResult:
    room_id: str
    socket_id: str
    peer_id: Optional[str]
    participants: List[Dict[str, Any]]
    mode: RoomMode
    room_closed: bool


class SessionRegistry:
    """Owns every live room and its participants.

    All methods are synchronous: the signaling server calls them from a single
    event loop, so each call runs to completion before the next one starts and
    no locking is needed. Callers only ever receive dict snapshots.
    """

    def __init__(self, *, capacity: int = MAX_PARTICIPANTS, rng: Optional[random.Random] = None) -> None:
        self._rooms: Dict[str, Room] = {}
        self._capacity = capacity
        self._rng = rng or random.SystemRandom()
        self._started_at = time.time()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _generate_code(self) -> str:
        return "".join(self._rng.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))

    def create_room(self) -> str:
        room_id = self._generate_code()
        while room_id in self._rooms:
            room_id = self._generate_code()
        self._rooms[room_id] = Room(room_id=room_id)
        logger.info("Created room %s", room_id)
        return room_id

    def has_room(self, room_id: str) -> bool:
        return normalize_room_id(room_id) in self._rooms

    def describe_room(self, room_id: str) -> Dict[str, Any]:
        normalized = normalize_room_id(room_id)
        room = self._rooms.get(normalized)
        return {
            "exists": room is not None,
            "roomId": normalized,
            "participants": len(room.members) if room else 0,
            "capacity": self._capacity,
            "mode": (room.mode if room else RoomMode.MESH).value,
        }

    def room_of(self, socket_id: str) -> Optional[str]:
        for room in self._rooms.values():
            if socket_id in room.members:
                return room.room_id
        return None

    def is_member(self, socket_id: str, room_id: str) -> bool:
        room = self._rooms.get(normalize_room_id(room_id))
        return room is not None and socket_id in room.participants

    def members(self, room_id: str) -> List[str]:
        room = self._rooms.get(normalize_room_id(room_id))
        if room is None:
            return []
        return list(room.members)

    def roster(self, room_id: str) -> List[Dict[str, Any]]:
        room = self._rooms.get(normalize_room_id(room_id))
        if room is None:
            return []
        return room.roster()

    def join(self, socket_id: str, room_id: Any, peer_id: Any, display_name: Any = None) -> JoinResult:
        normalized = normalize_room_id(room_id)
        clean_peer_id = "" if peer_id is None else str(peer_id).strip()
        clean_name = sanitize_display_name(display_name)

        if not normalized or not clean_peer_id:
            raise InvalidInput()

        room = self._rooms.get(normalized)
        if room is not None and len(room.members) >= self._capacity:
            raise RoomFull()

        if room is None:
            room = Room(room_id=normalized)
            self._rooms[normalized] = room

        participant = Participant(
            socket_id=socket_id,
            peer_id=clean_peer_id,
            display_name=clean_name,
            media_state=MediaState(),
        )
        room.members.add(socket_id)
        room.participants[socket_id] = participant
        logger.info(
            "Peer %s (%s) joined room %s [%d/%d, %s]",
            clean_peer_id,
            clean_name,
            normalized,
            len(room.members),
            self._capacity,
            room.mode.value,
        )
        return JoinResult(
            room_id=normalized,
            participant=participant.to_dict(),
            participants=room.roster(),
            mode=room.mode,
            capacity=self._capacity,
        )

    def update_media_state(self, socket_id: str, room_id: Any, media_state: Any) -> Optional[Dict[str, Any]]:
        room = self._rooms.get(normalize_room_id(room_id))
        if room is None:
            return None
        participant = room.participants.get(socket_id)
        if participant is None:
            return None
        if isinstance(media_state, dict):
            participant.media_state.merge(media_state)
        return participant.to_dict()

    def leave(self, socket_id: str, room_id: Any = None) -> Optional[LeaveResult]:
        normalized = normalize_room_id(room_id) if room_id else self.room_of(socket_id)
        if not normalized:
            return None
        room = self._rooms.get(normalized)
        if room is None or socket_id not in room.members:
            return None

        room.members.discard(socket_id)
        participant = room.participants.pop(socket_id, None)
        result = LeaveResult(
            room_id=normalized,
            socket_id=socket_id,
            peer_id=participant.peer_id if participant else None,
            participants=room.roster(),
            mode=room.mode,
            room_closed=not room.members,
        )
        if not room.members:
            del self._rooms[normalized]
            logger.info("Room %s is empty and was removed", normalized)
        else:
            logger.info(
                "Peer %s left room %s [%d/%d, %s]",
                result.peer_id,
                normalized,
                len(room.members),
                self._capacity,
                room.mode.value,
            )
        return result

    def snapshot(self) -> Dict[str, Any]:
        rooms = [
            {
                "roomId": room.room_id,
                "createdAt": room.created_at,
                "participants": len(room.members),
                "mode": room.mode.value,
            }
            for room in self._rooms.values()
        ]
        return {
            "rooms": rooms,
            "room_count": len(rooms),
            "participant_count": sum(entry["participants"] for entry in rooms),
            "uptime": max(0.0, time.time() - self._started_at),
        }
