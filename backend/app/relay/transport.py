"""Downstream transport that reaches subscriber sessions."""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from threading import Lock

from fastapi import WebSocket

from .exceptions import DeliveryFailure

logger = logging.getLogger(__name__)


class SessionTransport(ABC):
    """Sends events to individual sessions by id."""

    @abstractmethod
    async def send(self, session_id: str, event: str, payload: dict, room: str | None = None) -> None:
        """Deliver one event. Raises DeliveryFailure if the session cannot be reached."""


class WebSocketTransport(SessionTransport):
    """Keeps one FastAPI WebSocket per session id."""

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._lock = Lock()

    def register(self, websocket: WebSocket) -> str:
        """Attach a freshly accepted socket. Returns its new session id."""
        session_id = uuid.uuid4().hex
        with self._lock:
            self._sockets[session_id] = websocket
        logger.debug("Session %s registered", session_id)
        return session_id

    def unregister(self, session_id: str) -> None:
        with self._lock:
            self._sockets.pop(session_id, None)
        logger.debug("Session %s unregistered", session_id)

    async def send(self, session_id: str, event: str, payload: dict, room: str | None = None) -> None:
        with self._lock:
            websocket = self._sockets.get(session_id)
        if websocket is None:
            raise DeliveryFailure(f"unknown session {session_id}")

        message: dict = {"event": event, "data": payload}
        if room is not None:
            message["room"] = room
        try:
            await websocket.send_json(message)
        except Exception as e:
            raise DeliveryFailure(f"{type(e).__name__}: {e}") from e

    def __len__(self) -> int:
        with self._lock:
            return len(self._sockets)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sockets
