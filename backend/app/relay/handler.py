"""Per-session subscription handling."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .exceptions import InvalidSubscriptionRequest
from .interface import FeedSource
from .models import InstrumentKey
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


@dataclass
class SubscribeResult:
    """Outcome of one subscribe/unsubscribe request from a session."""

    accepted: list[InstrumentKey] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "accepted": [key.to_dict() for key in self.accepted],
            "rejected": self.rejected,
        }


class SessionSubscriptionHandler:
    """Entry point for session events coming from the downstream transport.

    The only writer of the SubscriptionRegistry. The first session to ask for
    an instrument triggers an upstream subscribe; the last one to leave
    triggers an upstream unsubscribe.
    """

    def __init__(self, registry: SubscriptionRegistry, feed: FeedSource) -> None:
        self._registry = registry
        self._feed = feed
        # Keeps upstream instructions in the same order as registry changes
        self._lock = asyncio.Lock()

    async def on_subscribe(self, session_id: str, items: Iterable[Any]) -> SubscribeResult:
        result = self._parse(items)
        async with self._lock:
            first_interest: list[InstrumentKey] = []
            for key in result.accepted:
                added = self._registry.add_interest(key, session_id)
                if not added.already_subscribed_upstream:
                    first_interest.append(key)
            if first_interest:
                await self._feed.subscribe(first_interest)

        logger.info(
            "Session %s subscribed to %d instruments (%d new upstream, %d rejected)",
            session_id,
            len(result.accepted),
            len(first_interest),
            len(result.rejected),
        )
        return result

    async def on_unsubscribe(self, session_id: str, items: Iterable[Any]) -> SubscribeResult:
        result = self._parse(items)
        async with self._lock:
            emptied = [
                key for key in result.accepted
                if self._registry.remove_interest(key, session_id).now_empty
            ]
            if emptied:
                await self._feed.unsubscribe(emptied)

        logger.info("Session %s unsubscribed from %d instruments", session_id, len(result.accepted))
        return result

    async def on_disconnect(self, session_id: str) -> list[InstrumentKey]:
        """Drop every interest of a session. Returns the keys pruned upstream."""
        async with self._lock:
            emptied = self._registry.remove_session(session_id)
            if emptied:
                await self._feed.unsubscribe(emptied)

        logger.info("Session %s disconnected; pruned %d instruments", session_id, len(emptied))
        return emptied

    @staticmethod
    def _parse(items: Iterable[Any]) -> SubscribeResult:
        """Validate each requested instrument on its own. Bad entries are rejected, not fatal."""
        result = SubscribeResult()
        if isinstance(items, (str, bytes)) or not isinstance(items, Iterable):
            result.rejected.append({"item": repr(items), "reason": "expected a list of instruments"})
            return result

        seen: set[InstrumentKey] = set()
        for item in items:
            try:
                key = InstrumentKey.from_request(item)
            except InvalidSubscriptionRequest as e:
                logger.warning("Rejected subscription item %r: %s", item, e)
                result.rejected.append({"item": item, "reason": str(e)})
                continue
            if key not in seen:
                seen.add(key)
                result.accepted.append(key)
        return result
