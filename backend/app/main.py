"""FastAPI application that relays broker ticks to WebSocket sessions.

Run with:
    uvicorn app.main:app --app-dir backend
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .relay import (
    FanoutBroadcaster,
    SessionSubscriptionHandler,
    SubscriptionRegistry,
    WebSocketTransport,
    create_feed_source,
    create_stream_router,
)

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Frame level chatter from the client library
    logging.getLogger("websockets").setLevel(logging.WARNING)


def create_app() -> FastAPI:
    """Build the app. Relay state lives for the app lifespan, not in globals."""
    registry = SubscriptionRegistry()
    transport = WebSocketTransport()
    broadcaster = FanoutBroadcaster(registry, transport)
    feed = create_feed_source(registry, broadcaster.on_tick)
    handler = SessionSubscriptionHandler(registry, feed)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await feed.start()
        try:
            yield
        finally:
            await feed.stop()

    app = FastAPI(title="Tick Relay", lifespan=lifespan)
    app.state.registry = registry
    app.state.feed = feed
    app.include_router(create_stream_router(handler, transport, registry, feed))
    return app


configure_logging()
app = create_app()
