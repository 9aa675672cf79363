"""GBM-based simulated upstream feed."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Sequence

import numpy as np

from .codec import encode_frame
from .interface import FeedSource, TickHandler
from .models import Exchange, FeedState, InstrumentKey
from .registry import SubscriptionRegistry
from .seed_prices import DEFAULT_CORR, DEFAULT_PARAMS, INDEX_CORR, INDEX_PARAMS, INDEX_TOKENS, SEED_PRICES

logger = logging.getLogger(__name__)


class GBMSimulator:
    """Geometric Brownian Motion simulator for correlated prices.

    Math:
        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    Z is a vector of correlated standard normals obtained from the Cholesky
    factor of the pairwise correlation matrix.
    """

    # NSE session: 250 trading days * 6.25 hours/day
    TRADING_SECONDS_PER_YEAR = 250 * 6.25 * 3600
    DEFAULT_DT = 1.0 / TRADING_SECONDS_PER_YEAR

    def __init__(self, tokens: Sequence[str] = (), dt: float = DEFAULT_DT) -> None:
        self._dt = dt
        self._tokens: list[str] = []
        self._prices: dict[str, float] = {}
        self._params: dict[str, dict[str, float]] = {}
        self._cholesky: np.ndarray | None = None

        for token in tokens:
            self._add_token_internal(token)
        self._rebuild_cholesky()

    def step(self) -> dict[str, float]:
        """Advance every token by one time step. Returns {token: new_price}.

        Prices are rounded to paise, the resolution of the upstream feed.
        """
        n = len(self._tokens)
        if n == 0:
            return {}

        z = np.random.standard_normal(n)
        if self._cholesky is not None:
            z = self._cholesky @ z

        result: dict[str, float] = {}
        for i, token in enumerate(self._tokens):
            mu = self._params[token]["mu"]
            sigma = self._params[token]["sigma"]
            drift = (mu - 0.5 * sigma**2) * self._dt
            diffusion = sigma * math.sqrt(self._dt) * z[i]
            self._prices[token] *= math.exp(drift + diffusion)
            result[token] = round(self._prices[token], 2)
        return result

    def add_token(self, token: str) -> None:
        """Start simulating a token. Rebuilds the correlation factor."""
        if token in self._prices:
            return
        self._add_token_internal(token)
        self._rebuild_cholesky()

    def remove_token(self, token: str) -> None:
        """Stop simulating a token. Rebuilds the correlation factor."""
        if token not in self._prices:
            return
        self._tokens.remove(token)
        del self._prices[token]
        del self._params[token]
        self._rebuild_cholesky()

    def get_price(self, token: str) -> float | None:
        """Last simulated price for a token, or None if it is not simulated."""
        return self._prices.get(token)

    @property
    def tokens(self) -> list[str]:
        return list(self._tokens)

    def _add_token_internal(self, token: str) -> None:
        """Seed a token without touching the Cholesky factor (batch construction)."""
        self._tokens.append(token)
        self._prices[token] = SEED_PRICES.get(token, random.uniform(100.0, 3000.0))
        self._params[token] = dict(INDEX_PARAMS if token in INDEX_TOKENS else DEFAULT_PARAMS)

    def _rebuild_cholesky(self) -> None:
        """Recompute the Cholesky factor of the pairwise correlation matrix.

        With fewer than two tokens there is nothing to correlate and the draws
        are used as is.
        """
        n = len(self._tokens)
        if n <= 1:
            self._cholesky = None
            return

        corr = np.eye(n)
        for i in range(n):
            for j in range(i + 1, n):
                rho = self._pairwise_correlation(self._tokens[i], self._tokens[j])
                corr[i, j] = rho
                corr[j, i] = rho
        self._cholesky = np.linalg.cholesky(corr)

    @staticmethod
    def _pairwise_correlation(t1: str, t2: str) -> float:
        """Correlation between two tokens.

        Indices move together strongly; any pair involving a stock gets the
        weaker market-wide correlation.
        """
        if t1 in INDEX_TOKENS and t2 in INDEX_TOKENS:
            return INDEX_CORR
        return DEFAULT_CORR


class SimulatedFeed(FeedSource):
    """FeedSource that fabricates quote frames for subscribed tokens.

    Every ``update_interval`` seconds each simulated price is encoded into the
    upstream binary layout and goes through the same decode path as frames
    from the real broker, so downstream sees identical messages.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        on_tick: TickHandler,
        update_interval: float = 1.0,
    ) -> None:
        super().__init__(registry, on_tick)
        self._interval = update_interval
        self._sim = GBMSimulator()
        self._keys: dict[str, InstrumentKey] = {}
        self._opens: dict[str, float] = {}
        self._highs: dict[str, float] = {}
        self._lows: dict[str, float] = {}
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> FeedState:
        if self._task and not self._task.done():
            return FeedState.CONNECTED
        return FeedState.DISCONNECTED

    async def start(self) -> None:
        self._add_keys(self._registry.active_keys())
        self._task = asyncio.create_task(self._run_loop(), name="simulated-feed")
        logger.info("Simulated feed started with %d tokens", len(self._sim.tokens))

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Simulated feed stopped")

    async def subscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        self._add_keys(keys)
        return bool(keys)

    async def unsubscribe(self, keys: Sequence[InstrumentKey]) -> bool:
        for key in keys:
            # Same token may still be wanted on another exchange
            if self._registry.sessions_for_token(key.token):
                continue
            self._sim.remove_token(key.token)
            for table in (self._keys, self._opens, self._highs, self._lows):
                table.pop(key.token, None)
        return bool(keys)

    def get_tokens(self) -> list[str]:
        return self._sim.tokens

    def _add_keys(self, keys: Sequence[InstrumentKey]) -> None:
        for key in keys:
            self._sim.add_token(key.token)
            self._keys.setdefault(key.token, key)

    async def emit_once(self) -> int:
        """Step the simulation and push one frame per token. Returns frames sent."""
        prices = self._sim.step()
        for token, price in prices.items():
            open_price = self._opens.setdefault(token, price)
            high = self._highs[token] = max(self._highs.get(token, price), price)
            low = self._lows[token] = min(self._lows.get(token, price), price)
            key = self._keys.get(token)
            frame = encode_frame(
                token,
                ltp=price,
                open=open_price,
                high=high,
                low=low,
                close=open_price,
                exchange=key.exchange if key else Exchange.NSE,
            )
            await self._handle_frame(frame)
        return len(prices)

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.emit_once()
            except Exception:
                logger.exception("Simulated feed step failed")
            await asyncio.sleep(self._interval)
