from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from shared.protocol import (
    MAX_PARTICIPANTS,
    MediaState,
    RoomMode,
    SignalEvent,
    normalize_room_id,
    sanitize_display_name,
)

from .frame_cipher import CipherSession, FrameCipherWorker, PassphraseError
from .media import IncomingLink, MediaEngine, MediaStream, MediaTrack
from .signaling_client import SignalingClient
from .topology import ConnectionTopologyManager, SleepFunc

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[str], Awaitable[None] | None]


class SessionStatus(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    REJECTED = "rejected"
    LEFT = "left"
    DISCONNECTED = "disconnected"


class SignalSender(Protocol):
    async def join_room(self, room_id: str, peer_id: str, display_name: str) -> None:
        ...

    async def leave_room(self, room_id: str) -> None:
        ...

    async def send_media_state(self, room_id: str, media_state: Dict[str, bool]) -> None:
        ...

    async def send_active_speaker(self, room_id: str, peer_id: str) -> None:
        ...

    async def send_chat(self, room_id: str, message: str, *, kind: str = "message") -> None:
        ...


class CallSession:
    """One client taking part in one room.

    Owns the local stream, the topology manager and the frame cipher, and
    feeds them from the signaling channel. Server events land in ``inbox``
    and are handled strictly one after another.
    """

    def __init__(
        self,
        room_id: str,
        engine: MediaEngine,
        *,
        signaling: Optional[SignalSender] = None,
        host: str = "127.0.0.1",
        port: Optional[int] = None,
        peer_id: Optional[str] = None,
        display_name: Optional[str] = None,
        local_stream: Optional[MediaStream] = None,
        on_notice: Optional[NoticeCallback] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.room_id = normalize_room_id(room_id)
        self.peer_id = peer_id or uuid.uuid4().hex[:16]
        self.display_name = sanitize_display_name(display_name)
        self.local_stream = local_stream
        self.media_state = MediaState()
        self.status = SessionStatus.IDLE
        self.max_participants = MAX_PARTICIPANTS
        self.active_speaker: Optional[str] = None
        self.last_error: Optional[str] = None
        self.screen_track: Optional[MediaTrack] = None
        self.chat_log: List[Dict[str, Any]] = []
        self.inbox: asyncio.Queue[Tuple[SignalEvent, Dict[str, Any]]] = asyncio.Queue()

        self._on_notice = on_notice
        self._owns_signaling = signaling is None
        if signaling is None:
            if port is None:
                raise ValueError("port is required when no signaling channel is supplied")
            signaling = SignalingClient(host, port, self.handle_signal, on_disconnect=self.handle_disconnect)
        self._signaling: SignalSender = signaling

        self.cipher = CipherSession()
        self.cipher_worker = FrameCipherWorker()
        self.topology = ConnectionTopologyManager(
            engine,
            local_peer_id=self.peer_id,
            display_name=self.display_name,
            local_stream=local_stream,
            cipher_worker=self.cipher_worker,
            on_active_speaker=self._report_active_speaker,
            sleep=sleep,
        )
        self._pump: Optional[asyncio.Task[None]] = None
        self._stopped = asyncio.Event()

    @property
    def mode(self) -> RoomMode:
        return self.topology.mode

    async def join(self) -> None:
        if not self.room_id:
            raise ValueError("Invalid room id")
        if self._pump is None:
            self._pump = asyncio.create_task(self._run())
        if self._owns_signaling and isinstance(self._signaling, SignalingClient) and not self._signaling.connected:
            await self._signaling.connect()
        self.status = SessionStatus.JOINING
        logger.info("Joining room %s as %s (%s)", self.room_id, self.display_name, self.peer_id)
        await self._signaling.join_room(self.room_id, self.peer_id, self.display_name)

    async def wait_closed(self) -> None:
        await self._stopped.wait()

    async def leave(self) -> None:
        if self.status in (SessionStatus.JOINING, SessionStatus.JOINED):
            try:
                await self._signaling.leave_room(self.room_id)
                if isinstance(self._signaling, SignalingClient):
                    await self._signaling.flush()
            except Exception:
                logger.exception("Failed to send leave for room %s", self.room_id)
            self.status = SessionStatus.LEFT
        await self._shutdown()

    async def _shutdown(self) -> None:
        await self.topology.close_all()
        await self.cipher_worker.close()
        if self.screen_track is not None:
            self.screen_track.stop()
            self.screen_track = None
        if self.local_stream is not None:
            for track in self.local_stream.tracks():
                track.stop()
        if self._owns_signaling and isinstance(self._signaling, SignalingClient):
            await self._signaling.close()
        pump = self._pump
        self._pump = None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:  # pragma: no cover - task cancellation
                pass
        self._stopped.set()

    async def handle_signal(self, event: SignalEvent, payload: Dict[str, Any]) -> None:
        """Signaling callback; events are queued and handled in arrival order."""

        self.inbox.put_nowait((event, payload))

    async def handle_disconnect(self, reason: Optional[str]) -> None:
        if self.status in (SessionStatus.LEFT, SessionStatus.REJECTED):
            return
        logger.warning("Signaling connection lost: %s", reason)
        self.status = SessionStatus.DISCONNECTED
        self.last_error = reason or "signaling disconnected"
        await self._notice("Connection closed.")

    async def settle(self) -> None:
        """Wait until queued signals and the link events they caused are handled."""

        await self.inbox.join()
        await self.topology.settle()

    async def _run(self) -> None:
        while not self._stopped.is_set():
            event, payload = await self.inbox.get()
            try:
                await self._process(event, payload)
            except Exception:
                logger.exception("Error while handling %s", event.value)
            finally:
                self.inbox.task_done()

    async def _process(self, event: SignalEvent, payload: Dict[str, Any]) -> None:
        logger.debug("Signal %s payload %s", event.value, payload)

        if event == SignalEvent.ROOM_STATE:
            participants = list(payload.get("participants") or [])
            self.status = SessionStatus.JOINED
            self.max_participants = int(payload.get("maxParticipants") or MAX_PARTICIPANTS)
            await self.topology.apply_room_state(participants, payload.get("mode", RoomMode.MESH))
            if len(participants) >= self.max_participants:
                await self._notice("Room reached capacity.")
            return

        if event == SignalEvent.PARTICIPANTS_UPDATED:
            await self.topology.apply_participants(
                list(payload.get("participants") or []),
                payload.get("mode", RoomMode.MESH),
            )
            return

        if event == SignalEvent.PEER_JOINED:
            participant = payload.get("participant") or {}
            if participant.get("peerId"):
                await self._notice(f"{participant.get('displayName') or participant['peerId']} joined")
            await self.topology.peer_joined(participant, payload.get("mode", RoomMode.MESH))
            return

        if event == SignalEvent.PEER_LEFT:
            departed = await self.topology.peer_left(payload.get("peerId"), payload.get("mode", RoomMode.MESH))
            if departed is not None:
                await self._notice(f"{departed.get('displayName') or departed.get('peerId')} left")
            if self.active_speaker == payload.get("peerId"):
                self.active_speaker = None
            return

        if event == SignalEvent.PEER_MEDIA_UPDATED:
            peer_id = payload.get("peerId")
            if peer_id:
                self.topology.merge_media_state(peer_id, payload.get("mediaState") or {})
            return

        if event == SignalEvent.ACTIVE_SPEAKER:
            self.active_speaker = payload.get("peerId")
            return

        if event == SignalEvent.CHAT_EVENT:
            self.chat_log.append(dict(payload))
            return

        if event == SignalEvent.JOIN_ERROR:
            message = payload.get("message") or "Unable to join this room."
            self.status = SessionStatus.REJECTED
            self.last_error = message
            logger.warning("Join rejected: %s", message)
            await self._notice(message)
            await self._shutdown()
            return

        logger.debug("Ignoring client-bound event %s", event.value)

    def accept_incoming(self, incoming: IncomingLink) -> None:
        """Entry point for inbound link requests from the media engine."""

        self.topology.accept_incoming(incoming)

    async def set_mic(self, enabled: bool) -> None:
        if self.local_stream is None:
            return
        for track in self.local_stream.audio_tracks():
            track.enabled = enabled
        self.media_state.mic_enabled = enabled
        await self._emit_media_state()

    async def set_camera(self, enabled: bool) -> None:
        if self.local_stream is None:
            return
        for track in self.local_stream.video_tracks():
            track.enabled = enabled
        self.media_state.cam_enabled = enabled
        await self._emit_media_state()

    async def start_screen_share(self, track: MediaTrack) -> None:
        if self.screen_track is not None:
            await self.stop_screen_share()
        self.screen_track = track
        self.media_state.screen_sharing = True
        await self._emit_media_state()
        await self.topology.replace_outgoing_video(track)

    async def stop_screen_share(self) -> None:
        if self.screen_track is None:
            return
        self.screen_track.stop()
        self.screen_track = None
        self.media_state.screen_sharing = False
        await self._emit_media_state()
        await self.topology.replace_outgoing_video(None)

    async def send_chat(self, message: str) -> None:
        await self._signaling.send_chat(self.room_id, message)

    async def _emit_media_state(self) -> None:
        await self._signaling.send_media_state(self.room_id, self.media_state.to_dict())

    async def _report_active_speaker(self, peer_id: str) -> None:
        self.active_speaker = peer_id
        await self._signaling.send_active_speaker(self.room_id, peer_id)

    async def toggle_encryption(self, passphrase: Optional[str] = None, confirmation: Optional[str] = None) -> str:
        """Turn the frame cipher on (with a confirmed passphrase) or off.

        Raises ``PassphraseError`` when enabling with a bad passphrase.
        """

        try:
            fingerprint = self.cipher.toggle(self.room_id, passphrase, confirmation)
        except PassphraseError as exc:
            self.last_error = str(exc)
            await self._notice(str(exc))
            raise
        self.last_error = None
        self.topology.apply_cipher(self.cipher.options())
        if self.cipher.enabled:
            await self._notice(f"App-layer E2EE enabled. Fingerprint: {fingerprint}")
        else:
            await self._notice("App-layer E2EE disabled.")
        return fingerprint

    def participants(self) -> List[Dict[str, Any]]:
        return list(self.topology.roster.values())

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "room": self.room_id,
            "peerId": self.peer_id,
            "status": self.status.value,
            "roomMode": self.mode.value,
            "participants": len(self.topology.roster),
            "links": {peer_id: link.state.value for peer_id, link in self.topology.links.items()},
            "screenSharing": self.media_state.screen_sharing,
            "e2eeStatus": "on" if self.cipher.enabled else "off",
            "e2eeFingerprint": self.cipher.fingerprint,
            "activeSpeaker": self.active_speaker,
            "lastError": self.last_error or "none",
        }

    async def _notice(self, message: str) -> None:
        logger.info("%s", message)
        if self._on_notice is None:
            return
        try:
            result = self._on_notice(message)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Notice callback failed")
