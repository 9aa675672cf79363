"""Factory for creating the upstream feed source."""

from __future__ import annotations

import logging
import os

from .credentials import EnvCredentialSource
from .interface import FeedSource, TickHandler
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


def create_feed_source(registry: SubscriptionRegistry, on_tick: TickHandler) -> FeedSource:
    """Create the feed source selected by environment variables.

    - RELAY_FEED_SOURCE=simulator → SimulatedFeed (GBM prices, no broker needed)
    - otherwise → UpstreamFeedConnection to Angel One SmartStream, reading
      ANGEL_CLIENT_CODE / ANGEL_FEED_TOKEN / ANGEL_API_KEY before each connect.
      ANGEL_FEED_HOST and ANGEL_FEED_PATH override the endpoint.

    Returns an unstarted source. Caller must await source.start().
    """
    kind = os.environ.get("RELAY_FEED_SOURCE", "angel").strip().lower()

    if kind == "simulator":
        from .simulator import SimulatedFeed

        logger.info("Feed source: GBM simulator")
        return SimulatedFeed(registry=registry, on_tick=on_tick)

    if kind != "angel":
        logger.warning("Unknown RELAY_FEED_SOURCE %r; using Angel One feed", kind)

    from .upstream import DEFAULT_HOST, DEFAULT_PATH, UpstreamFeedConnection

    host = os.environ.get("ANGEL_FEED_HOST", "").strip() or DEFAULT_HOST
    path = os.environ.get("ANGEL_FEED_PATH", "").strip() or DEFAULT_PATH
    logger.info("Feed source: Angel One SmartStream at %s", host)
    return UpstreamFeedConnection(
        registry=registry,
        on_tick=on_tick,
        credential_source=EnvCredentialSource(),
        host=host,
        path=path,
    )
