import pytest

from client.media import LinkEvent, LinkEventKind, MediaStream
from client.peer_link import InvalidTransition, LinkState, PeerLink


class DummyHandle:
    def __init__(self, peer_id: str = "B", *, fail_on_close: bool = False) -> None:
        self.peer_id = peer_id
        self.closed = 0
        self._fail_on_close = fail_on_close

    async def replace_video_track(self, track) -> None:
        pass

    def close(self) -> None:
        self.closed += 1
        if self._fail_on_close:
            raise RuntimeError("already gone")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_happy_path_transitions() -> None:
    link = PeerLink("B")
    handle = DummyHandle()
    assert link.state == LinkState.IDLE

    link.begin(handle)
    assert link.state == LinkState.CONNECTING

    first, second = MediaStream(), MediaStream()
    link.activate(first)
    link.activate(second)
    assert link.state == LinkState.ACTIVE
    assert link.remote_stream is second

    assert link.close() is True
    assert link.state == LinkState.CLOSED
    assert handle.closed == 1


@pytest.mark.anyio
async def test_terminal_states_absorb_later_events() -> None:
    link = PeerLink("B")
    handle = DummyHandle()
    link.begin(handle)

    assert link.fail("ice failed") is True
    assert link.state == LinkState.FAILED
    assert link.error == "ice failed"
    assert link.close() is False
    assert link.fail("again") is False
    assert link.state == LinkState.FAILED
    assert handle.closed == 1


@pytest.mark.anyio
async def test_illegal_transitions_raise() -> None:
    link = PeerLink("B")
    with pytest.raises(InvalidTransition):
        link.activate(MediaStream())

    link.begin(DummyHandle())
    with pytest.raises(InvalidTransition) as excinfo:
        link.begin(DummyHandle())
    assert excinfo.value.current == LinkState.CONNECTING

    link.close()
    with pytest.raises(InvalidTransition):
        link.activate(MediaStream())


@pytest.mark.anyio
async def test_handle_close_errors_are_swallowed() -> None:
    link = PeerLink("B")
    link.begin(DummyHandle(fail_on_close=True))
    assert link.close() is True
    assert link.state == LinkState.CLOSED


@pytest.mark.anyio
async def test_post_queues_events_in_order() -> None:
    link = PeerLink("B")
    link.post(LinkEvent(LinkEventKind.STREAM))
    link.post(LinkEvent(LinkEventKind.CLOSED))
    assert (await link.inbox.get()).kind == LinkEventKind.STREAM
    assert (await link.inbox.get()).kind == LinkEventKind.CLOSED
