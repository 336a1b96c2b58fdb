from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from shared.protocol import normalize_room_id

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class RoomsClient:
    """Thin async wrapper around the rendezvous REST endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RoomsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def health(self) -> Dict[str, Any]:
        response = await self.client.get("/health")
        response.raise_for_status()
        return response.json()

    async def create_room(self) -> str:
        response = await self.client.post("/api/rooms")
        response.raise_for_status()
        room_id = response.json()["roomId"]
        logger.info("Created room %s", room_id)
        return room_id

    async def describe_room(self, room_id: str) -> Dict[str, Any]:
        """Look up a room; unknown codes come back with ``exists`` false.

        Raises ``httpx.HTTPStatusError`` when the code is rejected as invalid.
        """

        code = normalize_room_id(room_id) or room_id
        response = await self.client.get(f"/api/rooms/{code}")
        response.raise_for_status()
        return response.json()
