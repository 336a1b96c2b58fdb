from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import numpy as np

from shared.protocol import SPEAKER_LEVEL_THRESHOLD, SPEAKER_SAMPLE_INTERVAL_SECONDS

from .media import AudioMeter

logger = logging.getLogger(__name__)

SpeakerCallback = Callable[[str], Awaitable[None] | None]


class ActiveSpeakerMonitor:
    """Periodically samples a remote peer's audio level and reports when it is speaking."""

    def __init__(
        self,
        peer_id: str,
        meter: AudioMeter,
        on_speaking: SpeakerCallback,
        *,
        interval: float = SPEAKER_SAMPLE_INTERVAL_SECONDS,
        threshold: float = SPEAKER_LEVEL_THRESHOLD,
    ) -> None:
        self.peer_id = peer_id
        self._meter = meter
        self._on_speaking = on_speaking
        self._interval = interval
        self._threshold = threshold
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def level(self) -> float:
        data = np.asarray(self._meter.byte_frequency_data(), dtype=np.float32)
        if data.size == 0:
            return 0.0
        return float(data.mean())

    def is_speaking(self) -> bool:
        return self.level() > self._threshold

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    speaking = self.is_speaking()
                except Exception:
                    logger.exception("Audio level sampling failed for %s", self.peer_id)
                    continue
                if not speaking:
                    continue
                try:
                    result = self._on_speaking(self.peer_id)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception("Active speaker callback failed for %s", self.peer_id)
        except asyncio.CancelledError:  # pragma: no cover - loop cancellation
            pass
