"""Optional end-to-end frame cipher layered over the media transport.

The key is a single unsalted SHA-256 over ``"<room>|<passphrase>"`` and the
AES-GCM nonce is a plain per-track counter that restarts whenever a transform
is reinstalled. Both are weak; this layer is a best-effort add-on on top of
DTLS/SRTP and not a security boundary.

Wire format of an encrypted frame: ``iv (12 bytes) || ciphertext || tag``,
where the IV is eight zero bytes followed by the big-endian 32-bit counter.
"""
from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass
from typing import Dict, NamedTuple, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .media import EncodedFrame, FrameDirection, FrameSink, TrackKind

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 12
FINGERPRINT_BYTES = 12
MIN_PASSPHRASE_LENGTH = 8
_COUNTER = struct.Struct(">I")


class PassphraseError(ValueError):
    pass


def validate_passphrase(passphrase: Optional[str], confirmation: Optional[str]) -> str:
    value = passphrase or ""
    if len(value) < MIN_PASSPHRASE_LENGTH:
        raise PassphraseError(f"Passphrase too short. Use at least {MIN_PASSPHRASE_LENGTH} characters.")
    if value != (confirmation or ""):
        raise PassphraseError("Passphrases do not match.")
    return value


def derive_key(room_id: str, passphrase: str) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(f"{room_id}|{passphrase}".encode("utf-8"))
    return digest.finalize()


def format_fingerprint(key_material: Optional[bytes]) -> str:
    if not key_material:
        return "none"
    hex_digits = key_material[:FINGERPRINT_BYTES].hex()
    return "-".join(hex_digits[i : i + 4] for i in range(0, len(hex_digits), 4))


def counter_iv(counter: int) -> bytes:
    return bytes(IV_BYTES - _COUNTER.size) + _COUNTER.pack(counter & 0xFFFFFFFF)


@dataclass(frozen=True, slots=True)
class TransformOptions:
    """Immutable snapshot of cipher settings handed to the worker."""

    enabled: bool = False
    key_material: bytes = b""

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.key_material)


class CipherSession:
    """Client-side cipher state: key, enabled flag and display fingerprint."""

    def __init__(self) -> None:
        self.enabled = False
        self.key_material: Optional[bytes] = None

    @property
    def fingerprint(self) -> str:
        if not self.enabled:
            return "none"
        return format_fingerprint(self.key_material)

    def enable(self, room_id: str, passphrase: Optional[str], confirmation: Optional[str]) -> str:
        value = validate_passphrase(passphrase, confirmation)
        self.key_material = derive_key(room_id, value)
        self.enabled = True
        logger.info("Frame cipher enabled (fingerprint %s)", self.fingerprint)
        return self.fingerprint

    def disable(self) -> None:
        # key bytes stay until the next toggle
        self.enabled = False
        logger.info("Frame cipher disabled")

    def toggle(self, room_id: str, passphrase: Optional[str] = None, confirmation: Optional[str] = None) -> str:
        """Flip encryption on or off and return the resulting fingerprint."""

        if self.enabled:
            self.disable()
            return self.fingerprint
        self.key_material = None
        return self.enable(room_id, passphrase, confirmation)

    def options(self) -> TransformOptions:
        return TransformOptions(enabled=self.enabled, key_material=bytes(self.key_material or b""))


class FrameCipherTransform:
    """Encrypts or decrypts the frames of one track on one link."""

    def __init__(self, options: TransformOptions, direction: FrameDirection) -> None:
        self.direction = direction
        self.counter = 0
        self._aead = AESGCM(options.key_material) if options.active else None

    @property
    def passthrough(self) -> bool:
        return self._aead is None

    def encode(self, payload: bytes) -> bytes:
        if self._aead is None:
            return payload
        iv = counter_iv(self.counter)
        self.counter += 1
        return iv + self._aead.encrypt(iv, payload, None)

    def decode(self, payload: bytes) -> Optional[bytes]:
        """Return the plaintext, or ``None`` if the frame must be dropped."""

        if self._aead is None:
            return payload
        if len(payload) <= IV_BYTES:
            return None
        iv, ciphertext = payload[:IV_BYTES], payload[IV_BYTES:]
        try:
            return self._aead.decrypt(iv, ciphertext, None)
        except InvalidTag:
            return None

    def process(self, frame: EncodedFrame) -> Optional[EncodedFrame]:
        try:
            if self.direction == FrameDirection.ENCODE:
                data: Optional[bytes] = self.encode(frame.data)
            else:
                data = self.decode(frame.data)
        except (ValueError, OverflowError) as exc:
            logger.debug("Dropping %s frame that could not be %sd: %s", frame.kind.value, self.direction.value, exc)
            return None
        if data is None:
            logger.debug("Dropping undecipherable %s frame", frame.kind.value)
            return None
        frame.data = data
        return frame


class TransformKey(NamedTuple):
    link_id: str
    direction: FrameDirection
    kind: TrackKind


class FramePort:
    """Feed side of an installed transform, handed to the media engine."""

    def __init__(self, worker: "FrameCipherWorker", key: TransformKey) -> None:
        self._worker = worker
        self.key = key

    def submit(self, frame: EncodedFrame) -> None:
        self._worker.submit(*self.key, frame)


class FrameCipherWorker:
    """Runs every frame transform for the client.

    Each (link, direction, track kind) gets its own ordered channel and task,
    so frames of one track come out in arrival order while different tracks
    are processed independently. Settings only arrive through ``install``
    as immutable ``TransformOptions``.
    """

    def __init__(self) -> None:
        self._transforms: Dict[TransformKey, FrameCipherTransform] = {}
        self._sinks: Dict[TransformKey, FrameSink] = {}
        self._channels: Dict[TransformKey, asyncio.Queue[Optional[EncodedFrame]]] = {}
        self._tasks: Dict[TransformKey, asyncio.Task[None]] = {}
        self._closed = False

    def install(
        self,
        link_id: str,
        direction: FrameDirection,
        kind: TrackKind,
        options: TransformOptions,
        sink: FrameSink,
    ) -> FramePort:
        if self._closed:
            raise RuntimeError("frame cipher worker is closed")
        key = TransformKey(link_id, direction, kind)
        # a fresh transform per install, so the frame counter starts over
        self._transforms[key] = FrameCipherTransform(options, direction)
        self._sinks[key] = sink
        if key not in self._channels:
            channel: asyncio.Queue[Optional[EncodedFrame]] = asyncio.Queue()
            self._channels[key] = channel
            self._tasks[key] = asyncio.create_task(self._run_channel(key, channel))
        return FramePort(self, key)

    def transform_for(self, link_id: str, direction: FrameDirection, kind: TrackKind) -> Optional[FrameCipherTransform]:
        return self._transforms.get(TransformKey(link_id, direction, kind))

    def submit(self, link_id: str, direction: FrameDirection, kind: TrackKind, frame: EncodedFrame) -> None:
        key = TransformKey(link_id, direction, kind)
        channel = self._channels.get(key)
        if channel is None:
            logger.debug("Dropping frame for uninstalled transform %s", key)
            return
        channel.put_nowait(frame)

    def uninstall_link(self, link_id: str) -> None:
        for key in [key for key in self._channels if key.link_id == link_id]:
            self._retire(key)

    async def flush(self) -> None:
        """Wait until every frame submitted so far has been processed."""

        await asyncio.gather(*(channel.join() for channel in list(self._channels.values())))

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks.values())
        for key in list(self._channels):
            self._retire(key)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _retire(self, key: TransformKey) -> None:
        channel = self._channels.pop(key, None)
        self._tasks.pop(key, None)
        self._transforms.pop(key, None)
        self._sinks.pop(key, None)
        if channel is not None:
            channel.put_nowait(None)

    async def _run_channel(self, key: TransformKey, channel: asyncio.Queue[Optional[EncodedFrame]]) -> None:
        while True:
            frame = await channel.get()
            try:
                if frame is None:
                    return
                transform = self._transforms.get(key)
                if transform is None:
                    continue
                result = transform.process(frame)
                if result is None:
                    continue
                sink = self._sinks.get(key)
                if sink is None:
                    continue
                try:
                    sink(result)
                except Exception:
                    logger.exception("Frame sink for %s failed", key)
            finally:
                channel.task_done()
