from __future__ import annotations

import asyncio
import logging
import ssl
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from shared.protocol import SignalEvent, SignalFrameTooLarge, decode_signal_stream, encode_signal, parse_event

logger = logging.getLogger(__name__)

MessageCallback = Callable[[SignalEvent, Dict[str, Any]], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]


class SignalingClient:
    """Handles the TCP signaling connection to the rendezvous server.

    Incoming events are handed to ``on_message`` one at a time and in the
    order the server sent them; the next event is not read off the buffer
    until the previous callback has finished.
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._ssl_context = ssl_context
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._stop = False

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._stop

    async def connect(self) -> None:
        logger.info("Connecting to signaling server %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port, ssl=self._ssl_context)
        self._stop = False
        self._tasks = [
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._recv_loop()),
        ]

    async def close(self) -> None:
        self._stop = True
        self._send_event.set()
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def send(self, event: SignalEvent, payload: Dict[str, Any]) -> None:
        self._send_queue.append(encode_signal(event, payload))
        self._send_event.set()

    async def join_room(self, room_id: str, peer_id: str, display_name: str) -> None:
        await self.send(
            SignalEvent.JOIN_ROOM,
            {"roomId": room_id, "peerId": peer_id, "displayName": display_name},
        )

    async def leave_room(self, room_id: str) -> None:
        await self.send(SignalEvent.LEAVE_ROOM, {"roomId": room_id})

    async def send_media_state(self, room_id: str, media_state: Dict[str, bool]) -> None:
        await self.send(SignalEvent.MEDIA_STATE_CHANGED, {"roomId": room_id, "mediaState": dict(media_state)})

    async def send_active_speaker(self, room_id: str, peer_id: str) -> None:
        await self.send(SignalEvent.ACTIVE_SPEAKER, {"roomId": room_id, "peerId": peer_id})

    async def send_chat(self, room_id: str, message: str, *, kind: str = "message") -> None:
        await self.send(SignalEvent.CHAT_EVENT, {"roomId": room_id, "type": kind, "message": message})

    async def flush(self) -> None:
        """Write out everything queued so far."""

        while self._send_queue and self._writer is not None:
            await self._send_raw(self._send_queue.popleft())

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise RuntimeError("Client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop:
                data = self._send_queue.popleft()
                try:
                    await self._send_raw(data)
                except Exception:
                    logger.exception("Failed to send signaling message")
                    self._stop = True
                    break

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Server closed signaling connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_signal_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    event = parse_event(message.get("event"))
                    if event is None:
                        logger.debug("Ignoring unknown signaling event %r", message.get("event"))
                        continue
                    payload = message.get("data")
                    await self._dispatch(event, payload if isinstance(payload, dict) else {})
        except asyncio.CancelledError:  # pragma: no cover - task cancellation
            disconnect_reason = "cancelled"
        except SignalFrameTooLarge as exc:
            logger.warning("Closing signaling connection: %s", exc)
            disconnect_reason = "frame_too_large"
        except Exception:
            logger.exception("Error while receiving from signaling server")
            disconnect_reason = "recv_error"
        finally:
            was_stopped = self._stop
            await self.close()
            if not was_stopped:
                await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch(self, event: SignalEvent, payload: Dict[str, Any]) -> None:
        try:
            result = self._on_message(event, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling signaling event %s", event.value)

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")
