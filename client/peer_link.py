from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Optional

from .media import LinkEvent, LinkHandle, MediaStream

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({LinkState.CLOSED, LinkState.FAILED})


class InvalidTransition(RuntimeError):
    def __init__(self, peer_id: str, current: LinkState, target: LinkState) -> None:
        super().__init__(f"link to {peer_id}: cannot go from {current.value} to {target.value}")
        self.peer_id = peer_id
        self.current = current
        self.target = target


class PeerLink:
    """State machine for the media link to one remote participant.

    The media engine reports stream/close/error events by posting them to
    ``inbox``; the topology manager drains the inbox in order and drives the
    transitions below.
    """

    def __init__(self, peer_id: str, *, retries: int = 0, inbound: bool = False) -> None:
        self.peer_id = peer_id
        self.link_id = uuid.uuid4().hex
        self.inbound = inbound
        self.retries = retries
        self.state = LinkState.IDLE
        self.handle: Optional[LinkHandle] = None
        self.remote_stream: Optional[MediaStream] = None
        self.error: Optional[str] = None
        self.inbox: asyncio.Queue[LinkEvent] = asyncio.Queue()

    def __repr__(self) -> str:
        return f"PeerLink({self.peer_id!r}, {self.state.value})"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def post(self, event: LinkEvent) -> None:
        """Event sink handed to the media engine."""

        self.inbox.put_nowait(event)

    def begin(self, handle: LinkHandle) -> None:
        if self.state != LinkState.IDLE:
            raise InvalidTransition(self.peer_id, self.state, LinkState.CONNECTING)
        self.handle = handle
        self.state = LinkState.CONNECTING
        logger.debug("Link to %s connecting (%s)", self.peer_id, "inbound" if self.inbound else "outbound")

    def activate(self, stream: Optional[MediaStream]) -> None:
        if self.state not in (LinkState.CONNECTING, LinkState.ACTIVE):
            raise InvalidTransition(self.peer_id, self.state, LinkState.ACTIVE)
        self.remote_stream = stream
        self.state = LinkState.ACTIVE
        logger.info("Link to %s active", self.peer_id)

    def close(self) -> bool:
        """Move to CLOSED; returns False if the link had already ended."""

        if self.is_terminal:
            return False
        self.state = LinkState.CLOSED
        self.shutdown()
        logger.info("Link to %s closed", self.peer_id)
        return True

    def fail(self, error: Optional[str] = None) -> bool:
        if self.is_terminal:
            return False
        self.state = LinkState.FAILED
        self.error = error
        self.shutdown()
        logger.warning("Link to %s failed: %s", self.peer_id, error or "transport error")
        return True

    def shutdown(self) -> None:
        """Close the engine handle, logging rather than raising on errors."""

        handle = self.handle
        if handle is None:
            return
        try:
            handle.close()
        except Exception:
            logger.exception("Error while closing link to %s", self.peer_id)
