"""Upstream broker feed connection (Angel One SmartStream)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Sequence
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from .codec import ACTION_SUBSCRIBE, ACTION_UNSUBSCRIBE, build_control_message, build_feed_url
from .credentials import CredentialSource
from .exceptions import UpstreamConnectFailure
from .interface import FeedSource, TickHandler
from .models import FeedState, InstrumentKey, UpstreamCredentials
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

DEFAULT_HOST = "smartapisocket.angelone.in"
DEFAULT_PATH = "smart-stream"
RECONNECT_DELAY = 2.0  # after a connection that opened and then closed
ERROR_RETRY_DELAY = 5.0  # after a failed connect or credential lookup
HEARTBEAT_INTERVAL = 30.0

Connector = Callable[[str], Any]


def _default_connect(url: str) -> Any:
    return websockets.connect(url, open_timeout=10, close_timeout=5)


class UpstreamFeedConnection(FeedSource):
    """Owns the single WebSocket connection to the broker feed.

    One background task runs the connect/read/reconnect cycle, so at most one
    connection is ever live. Replacing credentials cancels that task (closing
    the socket and any pending reconnect sleep) before a new one starts.

    States:
        CREDENTIALS_MISSING  no usable credentials, no attempt made
        CONNECTING           opening the socket
        CONNECTED            reading frames; subscribe/unsubscribe are sent
        CLOSING              being torn down by stop() or a credential change
        DISCONNECTED         waiting out the reconnect delay

    Reconnect policy: 2s after a connection that was open closes, 5s after a
    failed connect, an unexpected error or a failed credential lookup. On every
    successful open the full set of registry keys is subscribed again.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        on_tick: TickHandler,
        credentials: UpstreamCredentials | None = None,
        credential_source: CredentialSource | None = None,
        host: str = DEFAULT_HOST,
        path: str = DEFAULT_PATH,
        reconnect_delay: float = RECONNECT_DELAY,
        error_delay: float = ERROR_RETRY_DELAY,
        heartbeat_interval: float | None = HEARTBEAT_INTERVAL,
        connect: Connector | None = None,
    ) -> None:
        super().__init__(registry, on_tick)
        self._credentials = credentials
        self._credential_source = credential_source
        self._host = host
        self._path = path
        self._reconnect_delay = reconnect_delay
        self._error_delay = error_delay
        self._heartbeat_interval = heartbeat_interval
        self._connect = connect or _default_connect
        self._state = FeedState.DISCONNECTED
        self._task: asyncio.Task | None = None
        self._ws: Any = None
        self._running = False
        self._last_error: str | None = None
        # start, stop and credential events each swap the feed task
        self._lifecycle = asyncio.Lock()
        self._stats.update(connects=0, connect_failures=0)

    @property
    def state(self) -> FeedState:
        return self._state

    async def start(self) -> None:
        async with self._lifecycle:
            self._running = True
            if self._task and not self._task.done():
                logger.debug("Upstream feed already running")
                return
            self._launch()
        logger.info("Upstream feed started: %s/%s", self._host, self._path)

    async def stop(self) -> None:
        async with self._lifecycle:
            self._running = False
            await self._cancel_task()
            self._state = FeedState.DISCONNECTED
        logger.info("Upstream feed stopped")

    async def subscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        return await self._send_instruction(ACTION_SUBSCRIBE, keys)

    async def unsubscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        return await self._send_instruction(ACTION_UNSUBSCRIBE, keys)

    async def on_credentials_updated(self, credentials: UpstreamCredentials) -> None:
        """Adopt new credentials and reconnect with them.

        Any live connection and any pending reconnect delay are cancelled first.
        Overlapping updates are applied one at a time and the last one wins.
        """
        self._credentials = credentials
        logger.info("Upstream credentials updated: %r", credentials)
        async with self._lifecycle:
            if not self._running:
                return
            await self._cancel_task()
            self._launch()

    async def on_credentials_fetch_failed(self, error: BaseException | str) -> None:
        """Note a failed credential lookup. A live connection is left alone."""
        self._last_error = str(error)
        logger.warning("Upstream credential fetch failed: %s", error)
        async with self._lifecycle:
            if not self._running or self._state is FeedState.CONNECTED:
                return
            await self._cancel_task()
            self._launch(initial_delay=self._error_delay)

    def get_connection_stats(self) -> dict[str, object]:
        stats = super().get_connection_stats()
        stats["host"] = self._host
        stats["last_error"] = self._last_error
        return stats

    # --- Internal ---

    def _launch(self, initial_delay: float = 0.0) -> None:
        self._task = asyncio.create_task(self._run_loop(initial_delay), name="upstream-feed")

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            self._state = FeedState.CLOSING
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ws = None

    async def _run_loop(self, initial_delay: float = 0.0) -> None:
        """Connect, read until closed, wait, repeat."""
        if initial_delay:
            self._state = FeedState.DISCONNECTED
            await asyncio.sleep(initial_delay)

        while True:
            try:
                credentials = await self._resolve_credentials()
            except UpstreamConnectFailure as e:
                self._last_error = str(e)
                self._state = FeedState.DISCONNECTED
                logger.warning("Upstream setup failed: %s. Retrying in %.1fs", e, self._error_delay)
                await asyncio.sleep(self._error_delay)
                continue

            if credentials is None:
                self._state = FeedState.CREDENTIALS_MISSING
                if self._credential_source is None:
                    logger.warning("No upstream credentials; waiting for a credential update")
                    return
                logger.warning("No upstream credentials stored; checking again in %.1fs", self._error_delay)
                await asyncio.sleep(self._error_delay)
                continue

            opened = await self._connect_once(credentials)
            delay = self._reconnect_delay if opened else self._error_delay
            self._state = FeedState.DISCONNECTED
            logger.info("Reconnecting to upstream feed in %.1fs", delay)
            await asyncio.sleep(delay)

    async def _resolve_credentials(self) -> UpstreamCredentials | None:
        if self._credential_source is not None:
            try:
                fetched = await self._credential_source.fetch()
            except Exception as e:
                raise UpstreamConnectFailure(f"credential lookup failed: {e}") from e
            if fetched is not None and fetched.is_complete:
                self._credentials = fetched
        if self._credentials is None or not self._credentials.is_complete:
            return None
        return self._credentials

    async def _connect_once(self, credentials: UpstreamCredentials) -> bool:
        """Run one connection until it closes. Returns True if it ever opened."""
        url = build_feed_url(credentials, self._host, self._path)
        self._state = FeedState.CONNECTING
        logger.info("Connecting to upstream feed %s as %s", self._host, credentials.client_code)
        opened = False
        try:
            async with self._connect(url) as ws:
                opened = True
                self._ws = ws
                self._state = FeedState.CONNECTED
                self._stats["connects"] += 1
                self._last_error = None
                logger.info("Upstream feed connected")

                await self._resubscribe_all()
                heartbeat = self._start_heartbeat(ws)
                try:
                    async for message in ws:
                        await self._handle_message(message)
                finally:
                    if heartbeat is not None:
                        heartbeat.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await heartbeat
            logger.warning("Upstream feed closed")
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self._last_error = str(e)
            if opened:
                logger.warning("Upstream feed dropped: %s", e)
            else:
                self._stats["connect_failures"] += 1
                logger.warning("Upstream connect failed: %s", e)
        except Exception as e:
            self._last_error = f"{type(e).__name__}: {e}"
            if not opened:
                self._stats["connect_failures"] += 1
            logger.exception("Unexpected upstream feed error")
            # Retried like a failed connect
            opened = False
        finally:
            self._ws = None
        return opened

    async def _resubscribe_all(self) -> None:
        keys = self._registry.active_keys()
        if not keys:
            return
        if await self.subscribe(keys):
            logger.info("Resubscribed %d instruments after connect", len(keys))

    def _start_heartbeat(self, ws: Any) -> asyncio.Task | None:
        if not self._heartbeat_interval:
            return None
        return asyncio.create_task(self._heartbeat_loop(ws), name="upstream-heartbeat")

    async def _heartbeat_loop(self, ws: Any) -> None:
        """The feed expects a text ping; it answers with a text pong."""
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await ws.send("ping")
            except (OSError, WebSocketException) as e:
                logger.warning("Upstream heartbeat failed: %s", e)
                return

    async def _handle_message(self, message: bytes | str) -> None:
        if isinstance(message, str):
            logger.debug("Upstream control message: %s", message)
            return
        await self._handle_frame(message)

    async def _send_instruction(self, action: int, keys: Sequence[InstrumentKey]) -> bool:
        keys = list(keys)
        if not keys:
            return False
        # Built first so an unmapped exchange fails even while disconnected
        message = build_control_message(action, keys)
        verb = "subscribe" if action == ACTION_SUBSCRIBE else "unsubscribe"

        ws = self._ws
        if ws is None or self._state is not FeedState.CONNECTED:
            logger.debug("Feed not connected; %s for %d instruments deferred", verb, len(keys))
            return False
        try:
            await ws.send(json.dumps(message))
        except (OSError, WebSocketException) as e:
            logger.warning("Upstream %s failed: %s", verb, e)
            return False
        logger.info("Upstream %s: %s", verb, ", ".join(str(k) for k in keys))
        return True
