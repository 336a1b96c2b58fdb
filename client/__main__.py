from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
from typing import Any, Dict, List, Optional, Sequence

from shared.protocol import DEFAULT_HTTP_PORT, DEFAULT_ICE_SERVERS, DEFAULT_SIGNAL_PORT

from .media import LinkEventSink, LinkHandle, MediaStream
from .rooms_api import RoomsClient
from .session import CallSession, SessionStatus


class SignalingOnlyEngine:
    """Media engine stand-in for watching a room without sending media."""

    def __init__(self, ice_servers: Sequence[Dict[str, str]] = DEFAULT_ICE_SERVERS) -> None:
        self.ice_servers: List[Dict[str, str]] = [dict(server) for server in ice_servers]

    def call(
        self,
        peer_id: str,
        stream: MediaStream,
        *,
        metadata: Dict[str, Any],
        events: LinkEventSink,
    ) -> Optional[LinkHandle]:
        return None


def _default_api_url() -> str:
    port = os.getenv("PORT") or str(DEFAULT_HTTP_PORT)
    return f"http://{os.getenv('HOST', '127.0.0.1')}:{port}"


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Call rendezvous client")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    parser.add_argument("--api", default=_default_api_url(), help="Base URL of the rendezvous HTTP API")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("health", help="Show server health")
    commands.add_parser("create", help="Create a new room and print its code")

    info = commands.add_parser("info", help="Describe a room")
    info.add_argument("room_id")

    watch = commands.add_parser("watch", help="Join a room without media and print what happens")
    watch.add_argument("room_id")
    watch.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"), help="Signaling server host")
    watch.add_argument(
        "--signal-port",
        type=int,
        default=int(os.getenv("SIGNAL_PORT", DEFAULT_SIGNAL_PORT)),
        help="Signaling server TCP port",
    )
    watch.add_argument("--name", default=None, help="Display name shown to other participants")
    watch.add_argument(
        "--ice-server",
        dest="ice_servers",
        action="append",
        default=None,
        metavar="URL",
        help="STUN/TURN URL handed to the media engine (repeatable; defaults to the public set)",
    )
    return parser.parse_args(argv)


def build_engine(args: argparse.Namespace) -> SignalingOnlyEngine:
    if args.ice_servers:
        return SignalingOnlyEngine([{"urls": url} for url in args.ice_servers])
    return SignalingOnlyEngine()


async def _watch(args: argparse.Namespace) -> None:
    def on_notice(message: str) -> None:
        print(message, flush=True)

    session = CallSession(
        args.room_id,
        build_engine(args),
        host=args.host,
        port=args.signal_port,
        display_name=args.name,
        on_notice=on_notice,
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows fallback
            signal.signal(sig, lambda *_: stop_event.set())

    await session.join()
    closed = asyncio.create_task(session.wait_closed())
    stopped = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (closed, stopped):
            task.cancel()
        if session.status != SessionStatus.REJECTED:
            await session.leave()
    print(json.dumps(session.diagnostics(), indent=2))


async def _run(args: argparse.Namespace) -> None:
    if args.command == "watch":
        await _watch(args)
        return
    async with RoomsClient(args.api) as rooms:
        if args.command == "health":
            print(json.dumps(await rooms.health(), indent=2))
        elif args.command == "create":
            print(await rooms.create_room())
        elif args.command == "info":
            print(json.dumps(await rooms.describe_room(args.room_id), indent=2))


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
