from __future__ import annotations

import asyncio
import logging
import ssl
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Iterable, Optional, Set

from shared.protocol import (
    SignalEvent,
    SignalFrameTooLarge,
    decode_signal_stream,
    encode_signal,
    normalize_room_id,
    now_ms,
    parse_event,
)

from .session_registry import JoinError, LeaveResult, SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SignalingConnection:
    socket_id: str
    writer: asyncio.StreamWriter
    room_id: Optional[str] = None
    peer_id: Optional[str] = None
    display_name: Optional[str] = None

    def send(self, event: SignalEvent, data: Dict[str, Any]) -> None:
        self.writer.write(encode_signal(event, data))


class SignalingServer:
    """TCP signaling channel in front of the session registry.

    Messages and disconnects from all connections are handled one at a time
    under a single lock, including the fan-out that follows each registry
    change, so every client sees room updates in the order they happened.
    """

    def __init__(
        self,
        host: str,
        port: int,
        registry: SessionRegistry,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._registry = registry
        self._ssl_context = ssl_context
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Dict[str, SignalingConnection] = {}
        self._lock = asyncio.Lock()

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    async def start(self) -> None:
        try:
            self._server = await asyncio.start_server(
                self._handle_client, self._host, self._port, ssl=self._ssl_context
            )
        except OSError as exc:
            logger.warning("Could not listen on %s:%s (%s); falling back to an ephemeral port", self._host, self._port, exc)
            self._server = await asyncio.start_server(self._handle_client, self._host, 0, ssl=self._ssl_context)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Signaling server listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self.disconnect_all()
        await self._server.wait_closed()
        self._server = None

    def register_connection(self, writer: asyncio.StreamWriter) -> SignalingConnection:
        connection = SignalingConnection(socket_id=uuid.uuid4().hex, writer=writer)
        self._connections[connection.socket_id] = connection
        return connection

    def get_connection(self, socket_id: str) -> Optional[SignalingConnection]:
        return self._connections.get(socket_id)

    async def disconnect(self, socket_id: str) -> None:
        """Forget a connection, running the implicit leave for its room."""

        async with self._lock:
            connection = self._connections.get(socket_id)
            if connection is None:
                return
            if connection.room_id:
                result = self._registry.leave(socket_id, connection.room_id)
                if result is not None:
                    await self._announce_departure(result)
            self._connections.pop(socket_id, None)
        logger.info("Signaling connection %s closed", socket_id)

    async def disconnect_all(self) -> None:
        waiters: list[Awaitable[None]] = []
        for socket_id in list(self._connections):
            connection = self._connections.get(socket_id)
            if connection is None:
                continue
            try:
                connection.writer.close()
                waiters.append(connection.writer.wait_closed())
            except Exception:
                logger.exception("Error while closing signaling connection %s", socket_id)
            await self.disconnect(socket_id)
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        connection = self.register_connection(writer)
        logger.info("Incoming signaling connection %s from %s", connection.socket_id, peer)

        buffer = b""
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                buffer += data
                messages, buffer = decode_signal_stream(buffer)
                for message in messages:
                    payload = message.get("data")
                    await self.handle_message(
                        connection.socket_id,
                        message.get("event"),
                        payload if isinstance(payload, dict) else {},
                    )
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.info("Signaling connection %s dropped: %s", connection.socket_id, exc)
        except SignalFrameTooLarge as exc:
            logger.warning("Dropping signaling connection %s: %s", connection.socket_id, exc)
        except Exception:
            logger.exception("Error while handling signaling connection %s", connection.socket_id)
        finally:
            await self.disconnect(connection.socket_id)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def handle_message(self, socket_id: str, raw_event: Any, payload: Dict[str, Any]) -> None:
        async with self._lock:
            await self._handle_message(socket_id, raw_event, payload)

    async def _handle_message(self, socket_id: str, raw_event: Any, payload: Dict[str, Any]) -> None:
        connection = self._connections.get(socket_id)
        if connection is None:
            return
        event = parse_event(raw_event)
        if event is None:
            logger.debug("Ignoring unknown signaling event %r from %s", raw_event, socket_id)
            return

        if event == SignalEvent.JOIN_ROOM:
            await self._handle_join(connection, payload)
            return

        if event == SignalEvent.LEAVE_ROOM:
            room_id = normalize_room_id(payload.get("roomId") or connection.room_id)
            result = self._registry.leave(socket_id, room_id)
            if connection.room_id == room_id:
                connection.room_id = None
            if result is not None:
                await self._announce_departure(result)
            return

        if event == SignalEvent.MEDIA_STATE_CHANGED:
            room_id = normalize_room_id(payload.get("roomId"))
            participant = self._registry.update_media_state(socket_id, room_id, payload.get("mediaState"))
            if participant is None:
                return
            await self._emit_room(
                room_id,
                SignalEvent.PEER_MEDIA_UPDATED,
                {
                    "socketId": socket_id,
                    "peerId": participant["peerId"],
                    "mediaState": participant["mediaState"],
                },
                exclude={socket_id},
            )
            return

        if event == SignalEvent.ACTIVE_SPEAKER:
            room_id = normalize_room_id(payload.get("roomId"))
            if not self._registry.has_room(room_id):
                return
            # advisory only; the sender may report any peer as speaking
            await self._emit_room(
                room_id,
                SignalEvent.ACTIVE_SPEAKER,
                {"peerId": payload.get("peerId")},
                exclude={socket_id},
            )
            return

        if event == SignalEvent.CHAT_EVENT:
            room_id = normalize_room_id(payload.get("roomId"))
            if not self._registry.is_member(socket_id, room_id):
                return
            await self._emit_room(
                room_id,
                SignalEvent.CHAT_EVENT,
                {
                    "type": payload.get("type"),
                    "message": payload.get("message"),
                    "peerId": connection.peer_id,
                    "displayName": connection.display_name,
                    "at": now_ms(),
                },
                exclude={socket_id},
            )
            return

        logger.debug("Client %s sent server-only event %s", socket_id, event.value)

    async def _handle_join(self, connection: SignalingConnection, payload: Dict[str, Any]) -> None:
        socket_id = connection.socket_id
        if connection.room_id:
            previous = self._registry.leave(socket_id, connection.room_id)
            connection.room_id = None
            if previous is not None:
                await self._announce_departure(previous)

        try:
            result = self._registry.join(
                socket_id,
                payload.get("roomId"),
                payload.get("peerId"),
                payload.get("displayName"),
            )
        except JoinError as exc:
            logger.warning("Rejected join from %s: %s", socket_id, exc)
            await self._emit(socket_id, SignalEvent.JOIN_ERROR, {"message": str(exc)})
            return

        connection.room_id = result.room_id
        connection.peer_id = result.participant["peerId"]
        connection.display_name = result.participant["displayName"]
        mode = result.mode.value

        await self._emit(
            socket_id,
            SignalEvent.ROOM_STATE,
            {
                "roomId": result.room_id,
                "mode": mode,
                "maxParticipants": result.capacity,
                "participants": result.participants,
            },
        )
        await self._emit_room(
            result.room_id,
            SignalEvent.PEER_JOINED,
            {"participant": result.participant, "mode": mode},
            exclude={socket_id},
        )
        await self._emit_room(
            result.room_id,
            SignalEvent.PARTICIPANTS_UPDATED,
            {"participants": result.participants, "mode": mode},
        )

    async def _announce_departure(self, result: LeaveResult) -> None:
        if result.room_closed:
            return
        mode = result.mode.value
        await self._emit_room(
            result.room_id,
            SignalEvent.PEER_LEFT,
            {"socketId": result.socket_id, "peerId": result.peer_id, "mode": mode},
        )
        await self._emit_room(
            result.room_id,
            SignalEvent.PARTICIPANTS_UPDATED,
            {"participants": result.participants, "mode": mode},
        )

    async def _emit(self, socket_id: str, event: SignalEvent, data: Dict[str, Any]) -> None:
        await self._deliver([socket_id], event, data)

    async def _emit_room(
        self,
        room_id: str,
        event: SignalEvent,
        data: Dict[str, Any],
        *,
        exclude: Optional[Set[str]] = None,
    ) -> None:
        excluded = exclude or set()
        targets = [socket_id for socket_id in self._registry.members(room_id) if socket_id not in excluded]
        await self._deliver(targets, event, data)

    async def _deliver(self, socket_ids: Iterable[str], event: SignalEvent, data: Dict[str, Any]) -> None:
        drains: list[Awaitable[None]] = []
        for socket_id in socket_ids:
            connection = self._connections.get(socket_id)
            if connection is None:
                continue
            try:
                connection.send(event, data)
                drains.append(connection.writer.drain())
            except Exception:
                logger.exception("Failed to queue %s to %s", event.value, socket_id)
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)
