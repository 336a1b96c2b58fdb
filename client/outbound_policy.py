"""Decides what each peer link sends.

In mesh mode every peer gets the full local stream. Once the room is large
enough for the constrained fallback, only the first few peers in lexicographic
peer-id order keep video; the rest get audio only. Each client ranks using its
own view of the room, so two clients can briefly disagree while a join or
leave is still propagating.
"""
from __future__ import annotations

from typing import Iterable, Optional, Set

from shared.protocol import CONSTRAINED_VIDEO_PEERS, RoomMode

from .media import MediaStream


def allowed_video_peers(peer_ids: Iterable[str], limit: int = CONSTRAINED_VIDEO_PEERS) -> Set[str]:
    unique = sorted({peer_id for peer_id in peer_ids if peer_id})
    return set(unique[:limit])


def wants_video(mode: RoomMode | str, known_peer_ids: Iterable[str], target: str) -> bool:
    if RoomMode(mode) == RoomMode.MESH:
        return True
    return target in allowed_video_peers([*known_peer_ids, target])


def build_outbound_stream(
    mode: RoomMode | str,
    local_stream: Optional[MediaStream],
    known_peer_ids: Iterable[str],
    target: str,
) -> Optional[MediaStream]:
    if local_stream is None:
        return None
    if wants_video(mode, known_peer_ids, target):
        return local_stream
    return local_stream.audio_only()
