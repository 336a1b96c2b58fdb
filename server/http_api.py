from __future__ import annotations

import asyncio
import logging
import socket
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from shared.protocol import normalize_room_id

from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)


class HttpApi:
    """FastAPI application exposing the room REST endpoints."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self._app = FastAPI(title="Room rendezvous API")

        @self._app.get("/health")
        async def health() -> dict:
            snapshot = self._registry.snapshot()
            return {
                "ok": True,
                "rooms": snapshot["room_count"],
                "uptime": snapshot["uptime"],
            }

        @self._app.post("/api/rooms", status_code=201)
        async def create_room() -> dict:
            room_id = self._registry.create_room()
            return {"roomId": room_id}

        @self._app.get("/api/rooms/{room_id}")
        async def describe_room(room_id: str):
            normalized = normalize_room_id(room_id)
            if not normalized:
                return JSONResponse({"error": "Invalid room id"}, status_code=400)
            return self._registry.describe_room(normalized)

    @property
    def app(self) -> FastAPI:
        return self._app


def bind_listen_socket(host: str, port: int) -> socket.socket:
    """Bind a TCP listening socket, falling back to an ephemeral port if ``port`` is taken."""

    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as exc:
        logger.warning("Could not listen on %s:%s (%s); falling back to an ephemeral port", host, port, exc)
        sock.bind((host, 0))
    sock.listen(128)
    sock.setblocking(False)
    return sock


class HttpApiServer:
    """Background task helper for running the REST API under uvicorn."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        host: str,
        port: int,
        ssl_keyfile: Optional[Path] = None,
        ssl_certfile: Optional[Path] = None,
    ) -> None:
        self._api = HttpApi(registry)
        self._host = host
        self._port = port
        self._ssl_keyfile = ssl_keyfile
        self._ssl_certfile = ssl_certfile
        self._server: Optional[object] = None
        self._socket: Optional[socket.socket] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def app(self) -> FastAPI:
        return self._api.app

    @property
    def port(self) -> int:
        if self._socket is not None:
            return int(self._socket.getsockname()[1])
        return self._port

    @property
    def url(self) -> str:
        scheme = "https" if self._ssl_certfile else "http"
        return f"{scheme}://{self._host}:{self.port}"

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        self._socket = bind_listen_socket(self._host, self._port)
        config = uvicorn.Config(
            self._api.app,
            log_level="info",
            ssl_keyfile=str(self._ssl_keyfile) if self._ssl_keyfile else None,
            ssl_certfile=str(self._ssl_certfile) if self._ssl_certfile else None,
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        logger.info("Room API available at %s", self.url)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None
