"""Fan-out of decoded ticks to interested sessions."""

from __future__ import annotations

import asyncio
import logging

from .exceptions import DeliveryFailure
from .models import Tick
from .registry import SubscriptionRegistry
from .transport import SessionTransport

logger = logging.getLogger(__name__)

MARKET_UPDATE_EVENT = "market-update"


class FanoutBroadcaster:
    """Delivers each tick to every session interested in its token.

    Deliveries run concurrently. A failure for one session is logged and does
    not stop the others. Nothing is retried.
    """

    def __init__(self, registry: SubscriptionRegistry, transport: SessionTransport) -> None:
        self._registry = registry
        self._transport = transport
        self.delivery_failures: int = 0

    async def on_tick(self, tick: Tick) -> int:
        """Fan a tick out. Returns how many sessions received it."""
        sessions = self._registry.sessions_for_token(tick.token)
        if not sessions:
            return 0

        message = tick.to_message()
        room = tick.room
        results = await asyncio.gather(
            *(self._deliver(session_id, message, room) for session_id in sessions)
        )
        delivered = sum(results)
        logger.debug("Tick %s ltp=%s delivered to %d/%d sessions", tick.token, tick.ltp, delivered, len(sessions))
        return delivered

    async def _deliver(self, session_id: str, message: dict, room: str) -> bool:
        try:
            await self._transport.send(session_id, MARKET_UPDATE_EVENT, message, room=room)
            return True
        except DeliveryFailure as e:
            self.delivery_failures += 1
            logger.warning("Delivery to session %s failed: %s", session_id, e)
        except Exception as e:
            self.delivery_failures += 1
            logger.warning("Delivery to session %s failed: %s: %s", session_id, type(e).__name__, e)
        return False
