"""Abstract interface for upstream tick sources."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence

from .codec import DecodeFailure, decode
from .models import FeedState, InstrumentKey, Tick
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

TickHandler = Callable[[Tick], Awaitable[object]]


class FeedSource(ABC):
    """Contract for upstream tick providers.

    A source owns its connection, decodes every binary frame it receives and
    hands valid ticks to ``on_tick`` (normally ``FanoutBroadcaster.on_tick``).
    It only reads the registry; sessions mutate it through the handler.

    Lifecycle:
        source = create_feed_source(registry, broadcaster.on_tick)
        await source.start()
        # ... sessions come and go ...
        await source.subscribe([InstrumentKey.create("NSE", "99926000")])
        await source.unsubscribe([...])
        # ... app shutting down ...
        await source.stop()
    """

    def __init__(self, registry: SubscriptionRegistry, on_tick: TickHandler) -> None:
        self._registry = registry
        self._on_tick = on_tick
        self._stats: dict[str, int] = {
            "frames": 0,
            "ticks": 0,
            "decode_failures": 0,
            "invalid_ticks": 0,
        }

    @abstractmethod
    async def start(self) -> None:
        """Begin producing ticks in a background task. Must be called once."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the background task and release the connection.

        Safe to call multiple times.
        """

    @abstractmethod
    async def subscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        """Ask upstream for ticks on these keys.

        Returns False when the instruction could not be sent now; the registry
        still holds the interest and it is replayed on the next connect.
        """

    @abstractmethod
    async def unsubscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        """Tell upstream these keys are no longer wanted."""

    @property
    @abstractmethod
    def state(self) -> FeedState:
        """Current lifecycle state."""

    def get_connection_stats(self) -> dict[str, object]:
        return {"state": self.state.value, **self._stats}

    async def _handle_frame(self, frame: bytes) -> Tick | None:
        """Decode one frame and dispatch it. Bad frames are counted and dropped."""
        self._stats["frames"] += 1
        result = decode(frame)
        if isinstance(result, DecodeFailure):
            self._stats["decode_failures"] += 1
            logger.debug("Dropped frame: %s", result.reason)
            return None
        if not result.is_valid:
            self._stats["invalid_ticks"] += 1
            logger.debug("Dropped tick for %s with ltp=%s", result.token, result.ltp)
            return None
        self._stats["ticks"] += 1
        try:
            await self._on_tick(result)
        except Exception:
            logger.exception("Tick dispatch failed for %s", result.token)
        return result
