from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from shared.protocol import (
    RECONNECT_BASE_DELAY_SECONDS,
    RECONNECT_MAX_ATTEMPTS,
    SPEAKER_SAMPLE_INTERVAL_SECONDS,
    RoomMode,
)

from .frame_cipher import FrameCipherWorker, TransformOptions
from .media import IncomingLink, LinkEventKind, MediaEngine, MediaStream, MediaTrack
from .outbound_policy import build_outbound_stream
from .peer_link import InvalidTransition, LinkState, PeerLink
from .speaker_monitor import ActiveSpeakerMonitor, SpeakerCallback

logger = logging.getLogger(__name__)

PREFERRED_VIDEO_CODEC = "video/vp8"

SleepFunc = Callable[[float], Awaitable[Any]]


class ConnectionTopologyManager:
    """Keeps one media link per remote participant in step with the room roster.

    Roster and mode changes come in from signaling; link events come in from
    the media engine through each link's inbox. Both are handled on the event
    loop one at a time, so no locking is involved.
    """

    def __init__(
        self,
        engine: MediaEngine,
        *,
        local_peer_id: str = "",
        display_name: str = "Guest",
        local_stream: Optional[MediaStream] = None,
        cipher_worker: Optional[FrameCipherWorker] = None,
        on_active_speaker: Optional[SpeakerCallback] = None,
        sleep: SleepFunc = asyncio.sleep,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY_SECONDS,
        max_reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS,
        speaker_interval: float = SPEAKER_SAMPLE_INTERVAL_SECONDS,
        preferred_video_codec: str = PREFERRED_VIDEO_CODEC,
    ) -> None:
        self._engine = engine
        self.local_peer_id = local_peer_id
        self.display_name = display_name
        self.local_stream = local_stream
        self.mode = RoomMode.MESH
        self._cipher_worker = cipher_worker
        self._cipher_options = TransformOptions()
        self._on_active_speaker = on_active_speaker
        self._sleep = sleep
        self._reconnect_base_delay = reconnect_base_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._speaker_interval = speaker_interval
        self._preferred_video_codec = preferred_video_codec.lower()
        self._video_override: Optional[MediaTrack] = None

        self._roster: Dict[str, Dict[str, Any]] = {}
        self._links: Dict[str, PeerLink] = {}
        self._reconnect_attempts: Dict[str, int] = {}
        self._pumps: Dict[str, asyncio.Task[None]] = {}
        self._monitors: Dict[str, ActiveSpeakerMonitor] = {}
        self._timers: Set[asyncio.Task[None]] = set()

    @property
    def roster(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._roster)

    @property
    def links(self) -> Dict[str, PeerLink]:
        return dict(self._links)

    def link_for(self, peer_id: str) -> Optional[PeerLink]:
        return self._links.get(peer_id)

    def reconnect_attempts(self, peer_id: str) -> int:
        return self._reconnect_attempts.get(peer_id, 0)

    def has_monitor(self, peer_id: str) -> bool:
        return peer_id in self._monitors

    async def apply_room_state(self, participants: Iterable[Dict[str, Any]], mode: RoomMode | str) -> None:
        self.mode = RoomMode(mode)
        self._set_roster(participants)
        for peer_id, participant in list(self._roster.items()):
            if peer_id != self.local_peer_id:
                self.connect_to_peer(participant)

    async def apply_participants(self, participants: Iterable[Dict[str, Any]], mode: RoomMode | str) -> None:
        self.mode = RoomMode(mode)
        self._set_roster(participants)
        await self.apply_outbound_policy()

    async def peer_joined(self, participant: Dict[str, Any], mode: RoomMode | str) -> None:
        peer_id = participant.get("peerId")
        if not peer_id:
            return
        self._roster[peer_id] = dict(participant)
        self.mode = RoomMode(mode)
        self.connect_to_peer(participant)
        await self.apply_outbound_policy()

    async def peer_left(self, peer_id: Optional[str], mode: RoomMode | str) -> Optional[Dict[str, Any]]:
        self.mode = RoomMode(mode)
        departed = self._roster.pop(peer_id, None) if peer_id else None
        if peer_id:
            self.close_peer(peer_id)
        await self.apply_outbound_policy()
        return departed

    def merge_media_state(self, peer_id: str, media_state: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        participant = self._roster.get(peer_id)
        if participant is None:
            return None
        merged = dict(participant.get("mediaState") or {})
        merged.update(media_state or {})
        participant["mediaState"] = merged
        return dict(participant)

    def _set_roster(self, participants: Iterable[Dict[str, Any]]) -> None:
        fresh = {p["peerId"]: dict(p) for p in participants if p and p.get("peerId")}
        self._roster = fresh

    def outbound_stream_for(self, peer_id: str) -> Optional[MediaStream]:
        return build_outbound_stream(self.mode, self.local_stream, self._links.keys(), peer_id)

    def connect_to_peer(self, participant: Optional[Dict[str, Any]]) -> Optional[PeerLink]:
        if not participant:
            return None
        peer_id = participant.get("peerId")
        if not peer_id or peer_id == self.local_peer_id or peer_id in self._links:
            return None

        outbound = self.outbound_stream_for(peer_id)
        if outbound is None:
            logger.debug("No local stream yet; not calling %s", peer_id)
            return None

        link = PeerLink(peer_id, retries=self.reconnect_attempts(peer_id))
        handle = self._engine.call(
            peer_id,
            outbound,
            metadata={"displayName": self.display_name},
            events=link.post,
        )
        if handle is None:
            logger.warning("Media engine refused to call %s", peer_id)
            return None
        link.begin(handle)
        self._register(link)
        return link

    def accept_incoming(self, incoming: IncomingLink) -> Optional[PeerLink]:
        peer_id = incoming.peer_id
        existing = self._links.get(peer_id)
        if existing is not None:
            # Both sides dial each other when a peer joins. Keep the link
            # dialled by the lower peer id so both ends pick the same one.
            dialled_by_us = not existing.inbound
            if existing.state == LinkState.ACTIVE or not dialled_by_us or self.local_peer_id < peer_id:
                logger.debug("Declining duplicate inbound link from %s", peer_id)
                self._reject(incoming)
                return None
            logger.debug("Yielding outbound link to %s in favour of its inbound call", peer_id)
            existing.close()
            self._cleanup(existing)

        outbound = self.outbound_stream_for(peer_id)
        link = PeerLink(peer_id, retries=self.reconnect_attempts(peer_id), inbound=True)
        handle = incoming.answer(outbound, link.post)
        link.begin(handle)
        self._register(link)
        return link

    def close_peer(self, peer_id: str) -> bool:
        link = self._links.get(peer_id)
        if link is None:
            return False
        link.close()
        self._cleanup(link)
        return True

    def schedule_reconnect(self, peer_id: str) -> bool:
        retries = self._reconnect_attempts.get(peer_id, 0)
        if retries >= self._max_reconnect_attempts or peer_id not in self._roster:
            logger.info("Not reconnecting to %s (attempts=%d)", peer_id, retries)
            return False
        attempt = retries + 1
        self._reconnect_attempts[peer_id] = attempt
        delay = self._reconnect_base_delay * attempt
        logger.info("Reconnecting to %s in %.1fs (attempt %d/%d)", peer_id, delay, attempt, self._max_reconnect_attempts)
        task = asyncio.create_task(self._reconnect_later(peer_id, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return True

    async def _reconnect_later(self, peer_id: str, delay: float) -> None:
        await self._sleep(delay)
        participant = self._roster.get(peer_id)
        if participant is None:
            logger.debug("Reconnect to %s skipped; peer is no longer in the room", peer_id)
            return
        self.connect_to_peer(participant)

    def _reject(self, incoming: IncomingLink) -> None:
        try:
            incoming.reject()
        except Exception:
            logger.exception("Error while rejecting inbound link from %s", incoming.peer_id)

    def _register(self, link: PeerLink) -> None:
        self._links[link.peer_id] = link
        self._prefer_codec(link)
        self._apply_cipher_to_link(link)
        self._pumps[link.link_id] = asyncio.create_task(self._pump(link))

    async def _pump(self, link: PeerLink) -> None:
        try:
            while not link.is_terminal:
                event = await link.inbox.get()
                try:
                    if event.kind == LinkEventKind.STREAM:
                        self._on_stream(link, event.stream)
                    elif event.kind == LinkEventKind.CLOSED:
                        if link.close():
                            self._cleanup(link)
                    elif event.kind == LinkEventKind.FAILED:
                        if link.fail(event.error):
                            self._cleanup(link)
                            self.schedule_reconnect(link.peer_id)
                except InvalidTransition as exc:
                    logger.warning("Ignoring link event: %s", exc)
                finally:
                    link.inbox.task_done()
        except asyncio.CancelledError:  # pragma: no cover - loop cancellation
            pass
        finally:
            if self._pumps.get(link.link_id) is asyncio.current_task():
                self._pumps.pop(link.link_id, None)

    def _on_stream(self, link: PeerLink, stream: Optional[MediaStream]) -> None:
        if self._links.get(link.peer_id) is not link:
            return
        link.activate(stream)
        self._reconnect_attempts.pop(link.peer_id, None)
        link.retries = 0
        if stream is not None:
            self._start_monitor(link.peer_id, stream)

    def _cleanup(self, link: PeerLink) -> None:
        if self._links.get(link.peer_id) is link:
            del self._links[link.peer_id]
            self._stop_monitor(link.peer_id)
        if self._cipher_worker is not None:
            self._cipher_worker.uninstall_link(link.link_id)
        pump = self._pumps.pop(link.link_id, None)
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()

    async def settle(self) -> None:
        """Wait until every live link has processed the events posted so far."""

        for link in list(self._links.values()):
            if link.link_id in self._pumps:
                await link.inbox.join()

    async def apply_outbound_policy(self) -> None:
        for peer_id, link in list(self._links.items()):
            if link.handle is None or link.is_terminal:
                continue
            outbound = self.outbound_stream_for(peer_id)
            if outbound is None:
                continue
            video_tracks = outbound.video_tracks()
            track: Optional[MediaTrack] = video_tracks[0] if video_tracks else None
            if track is not None and self._video_override is not None:
                track = self._video_override
            await self._replace_video(link, track)

    async def replace_outgoing_video(self, track: Optional[MediaTrack]) -> None:
        """Send ``track`` instead of the camera on every link that carries video."""

        self._video_override = track
        await self.apply_outbound_policy()

    async def _replace_video(self, link: PeerLink, track: Optional[MediaTrack]) -> None:
        assert link.handle is not None
        try:
            await link.handle.replace_video_track(track)
        except Exception as exc:
            logger.debug("Video track replacement for %s failed: %s", link.peer_id, exc)

    def _prefer_codec(self, link: PeerLink) -> None:
        setter = getattr(link.handle, "set_codec_preferences", None)
        capabilities = getattr(self._engine, "video_codec_capabilities", None)
        if setter is None or capabilities is None:
            return
        try:
            codecs = list(capabilities() or [])
            preferred = [codec for codec in codecs if codec.lower() == self._preferred_video_codec]
            if not preferred:
                return
            others = [codec for codec in codecs if codec.lower() != self._preferred_video_codec]
            setter([preferred[0], *others])
        except Exception as exc:
            logger.debug("Codec preference not applied for %s: %s", link.peer_id, exc)

    @property
    def cipher_options(self) -> TransformOptions:
        return self._cipher_options

    def apply_cipher(self, options: TransformOptions) -> None:
        self._cipher_options = options
        for link in list(self._links.values()):
            self._apply_cipher_to_link(link)

    def _apply_cipher_to_link(self, link: PeerLink) -> None:
        if self._cipher_worker is None or link.handle is None:
            return
        routes = getattr(link.handle, "frame_routes", None)
        if routes is None:
            return
        for route in routes():
            port = self._cipher_worker.install(
                link.link_id,
                route.direction,
                route.kind,
                self._cipher_options,
                route.deliver,
            )
            route.attach(port.submit)

    def _start_monitor(self, peer_id: str, stream: MediaStream) -> None:
        if self._on_active_speaker is None or not stream.audio_tracks():
            return
        meter_factory = getattr(self._engine, "audio_meter", None)
        if meter_factory is None:
            return
        meter = meter_factory(stream)
        if meter is None:
            return
        self._stop_monitor(peer_id)
        monitor = ActiveSpeakerMonitor(peer_id, meter, self._on_active_speaker, interval=self._speaker_interval)
        self._monitors[peer_id] = monitor
        monitor.start()

    def _stop_monitor(self, peer_id: str) -> None:
        monitor = self._monitors.pop(peer_id, None)
        if monitor is not None:
            monitor.stop()

    async def close_all(self) -> None:
        pumps = list(self._pumps.values())
        for link in list(self._links.values()):
            link.close()
            self._cleanup(link)
        self._roster.clear()
        timers = list(self._timers)
        for timer in timers:
            timer.cancel()
        for pump in pumps:
            pump.cancel()
        if timers or pumps:
            await asyncio.gather(*timers, *pumps, return_exceptions=True)
        self._timers.clear()
        self._pumps.clear()
