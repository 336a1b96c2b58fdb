from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import ssl

from pathlib import Path
from typing import Optional

from shared.protocol import DEFAULT_HTTP_PORT, DEFAULT_SIGNAL_PORT

from server.http_api import HttpApiServer
from server.session_registry import SessionRegistry
from server.signaling_server import SignalingServer

logger = logging.getLogger(__name__)


def _env_path(name: str) -> Optional[Path]:
    value = os.environ.get(name)
    return Path(value) if value else None


def load_ssl_context(keyfile: Optional[Path], certfile: Optional[Path]) -> Optional[ssl.SSLContext]:
    """Build a server TLS context, or ``None`` when TLS is not requested."""

    if keyfile is None and certfile is None:
        return None
    if keyfile is None or certfile is None or not keyfile.exists() or not certfile.exists():
        raise FileNotFoundError("SSL enabled but key/cert file not found")
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(certfile=str(certfile), keyfile=str(keyfile))
    return context


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-party call rendezvous server")
    parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"), help="Host/IP to bind both listeners")
    parser.add_argument(
        "--http-port",
        type=int,
        default=int(os.environ.get("PORT", DEFAULT_HTTP_PORT)),
        help="Port for the room REST API",
    )
    parser.add_argument(
        "--signal-port",
        type=int,
        default=int(os.environ.get("SIGNAL_PORT", DEFAULT_SIGNAL_PORT)),
        help="TCP signaling port",
    )
    parser.add_argument("--ssl-keyfile", type=Path, default=_env_path("SSL_KEY_PATH"), help="TLS private key")
    parser.add_argument("--ssl-certfile", type=Path, default=_env_path("SSL_CERT_PATH"), help="TLS certificate")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    return parser.parse_args(argv)


def configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    configure_logging(args)

    ssl_context = load_ssl_context(args.ssl_keyfile, args.ssl_certfile)

    registry = SessionRegistry()
    signaling_server = SignalingServer(args.host, args.signal_port, registry, ssl_context=ssl_context)
    http_server = HttpApiServer(
        registry,
        host=args.host,
        port=args.http_port,
        ssl_keyfile=args.ssl_keyfile if ssl_context else None,
        ssl_certfile=args.ssl_certfile if ssl_context else None,
    )

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if stop_event.is_set():
            logger.debug("Shutdown already in progress")
            return
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await signaling_server.start()
    await http_server.start()
    logger.info("Rendezvous server ready (rest=%s, signaling port=%s)", http_server.url, signaling_server.port)

    await stop_event.wait()

    logger.info("Shutdown signal processed; stopping services")

    try:
        await signaling_server.stop()
    except Exception:
        logger.exception("Error stopping signaling server")

    try:
        await http_server.stop()
    except Exception:
        logger.exception("Error stopping room API")

    logger.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
