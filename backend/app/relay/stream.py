"""WebSocket endpoint for subscriber sessions and feed status route."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .exceptions import DeliveryFailure
from .handler import SessionSubscriptionHandler
from .interface import FeedSource
from .registry import SubscriptionRegistry
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)


def create_stream_router(
    handler: SessionSubscriptionHandler,
    transport: WebSocketTransport,
    registry: SubscriptionRegistry,
    feed: FeedSource,
) -> APIRouter:
    """Create the session WebSocket router wired to the shared relay objects.

    This factory pattern lets us inject the relay state without globals.
    """
    router = APIRouter(tags=["streaming"])

    @router.websocket("/ws/ticks")
    async def tick_session(websocket: WebSocket) -> None:
        """One subscriber session.

        Client messages:

            {"event": "subscribe", "data": [{"token": "99926000", "exchange": "NSE"}]}
            {"event": "unsubscribe", "data": [...]}

        Server messages:

            {"event": "subscribed", "data": {"accepted": [...], "rejected": [...]}}
            {"event": "market-update", "room": "TOKEN:99926000", "data": {...}}
            {"event": "error", "data": {"message": "..."}}
        """
        await websocket.accept()
        session_id = transport.register(websocket)
        client = websocket.client.host if websocket.client else "unknown"
        logger.info("Session %s connected from %s", session_id, client)

        try:
            while True:
                raw = await websocket.receive_text()
                await _dispatch(handler, transport, session_id, raw)
        except WebSocketDisconnect:
            logger.info("Session %s closed by client", session_id)
        except DeliveryFailure as e:
            logger.info("Session %s dropped: %s", session_id, e)
        finally:
            transport.unregister(session_id)
            await handler.on_disconnect(session_id)

    @router.get("/api/feed/status")
    async def feed_status() -> dict:
        """Upstream connection stats plus registry size."""
        return {
            **feed.get_connection_stats(),
            "instruments": len(registry),
            "sessions": len(transport),
        }

    return router


async def _dispatch(
    handler: SessionSubscriptionHandler,
    transport: WebSocketTransport,
    session_id: str,
    raw: str,
) -> None:
    """Route one client message. Malformed input gets an error event, never a disconnect."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await transport.send(session_id, "error", {"message": "invalid JSON"})
        return

    event = message.get("event") if isinstance(message, dict) else None
    items = message.get("data", []) if isinstance(message, dict) else None
    if event == "subscribe":
        result = await handler.on_subscribe(session_id, items)
        await transport.send(session_id, "subscribed", result.to_dict())
    elif event == "unsubscribe":
        result = await handler.on_unsubscribe(session_id, items)
        await transport.send(session_id, "unsubscribed", result.to_dict())
    else:
        await transport.send(session_id, "error", {"message": f"unknown event: {event!r}"})
