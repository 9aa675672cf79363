"""Fixtures and fakes for relay tests.

The upstream socket and the downstream transport are replaced by in-memory
fakes so connection lifecycle and fan-out can be driven step by step.
"""

import asyncio
from collections.abc import Sequence

import pytest

from app.relay.interface import FeedSource
from app.relay.models import FeedState, InstrumentKey, UpstreamCredentials
from app.relay.registry import SubscriptionRegistry
from app.relay.transport import SessionTransport

_CLOSE = object()


class FakeFeedSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, frames=(), stay_open=True):
        self.sent: list = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self._inbox.put_nowait(frame)
        if not stay_open:
            self._inbox.put_nowait(_CLOSE)

    def push(self, frame) -> None:
        self._inbox.put_nowait(frame)

    def close_from_remote(self) -> None:
        self._inbox.put_nowait(_CLOSE)

    async def send(self, message) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class _FakeConnection:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc_info):
        if isinstance(self._outcome, FakeFeedSocket):
            self._outcome.closed = True
        return False


class FakeConnector:
    """Callable replacing websockets.connect. Hands out sockets (or errors) in order."""

    def __init__(self, *outcomes):
        self._outcomes = list(outcomes)
        self.urls: list[str] = []
        self.handed_out: list = []

    def __call__(self, url: str):
        self.urls.append(url)
        if not self._outcomes:
            return _FakeConnection(OSError("no more fake sockets"))
        outcome = self._outcomes.pop(0)
        self.handed_out.append(outcome)
        return _FakeConnection(outcome)


class RecordingTransport(SessionTransport):
    """Collects every delivery. Sessions listed in ``failing`` raise on send."""

    def __init__(self, failing=()):
        self.sent: list[tuple[str, str, dict, str | None]] = []
        self.failing = set(failing)

    async def send(self, session_id, event, payload, room=None):
        if session_id in self.failing:
            raise ConnectionResetError(f"{session_id} went away")
        self.sent.append((session_id, event, payload, room))

    def sessions(self) -> set[str]:
        return {session_id for session_id, *_ in self.sent}


class FakeFeed(FeedSource):
    """FeedSource that records upstream instructions instead of sending them."""

    def __init__(self, registry=None, on_tick=None):
        async def _ignore(tick):
            return None

        super().__init__(registry if registry is not None else SubscriptionRegistry(), on_tick or _ignore)
        self.subscribed: list[list[InstrumentKey]] = []
        self.unsubscribed: list[list[InstrumentKey]] = []
        self.instructions: list[tuple[str, list[InstrumentKey]]] = []
        self.started = False

    @property
    def state(self) -> FeedState:
        return FeedState.CONNECTED if self.started else FeedState.DISCONNECTED

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def subscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        self.subscribed.append(list(keys))
        self.instructions.append(("subscribe", list(keys)))
        return True

    async def unsubscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        self.unsubscribed.append(list(keys))
        self.instructions.append(("unsubscribe", list(keys)))
        return True


@pytest.fixture
def registry():
    return SubscriptionRegistry()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def fake_feed(registry):
    return FakeFeed(registry)


@pytest.fixture
def credentials():
    return UpstreamCredentials(client_code="A123", feed_token="feed-token-1", api_key="key-1")


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 1.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(0.005)
        return predicate()

    return _wait


@pytest.fixture
def make_socket():
    return FakeFeedSocket


@pytest.fixture
def make_connector():
    return FakeConnector
