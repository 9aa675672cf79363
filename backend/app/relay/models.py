"""Data models for the tick relay."""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from .exceptions import InvalidSubscriptionRequest

# Width of the token field in the upstream binary frame
MAX_TOKEN_LENGTH = 25


class Exchange(Enum):
    """Exchange segments accepted by the upstream feed. Value is its exchangeType."""

    NSE = 1
    NFO = 2
    BSE = 3

    @classmethod
    def parse(cls, code: Any) -> Exchange:
        """Resolve an exchange name such as 'NSE' or 'nfo'.

        Unknown codes are rejected instead of falling back to NSE.
        """
        if isinstance(code, cls):
            return code
        if not isinstance(code, str):
            raise InvalidSubscriptionRequest(f"Exchange must be a string, got {type(code).__name__}")
        try:
            return cls[code.strip().upper()]
        except KeyError:
            raise InvalidSubscriptionRequest(f"Unknown exchange: {code!r}") from None


class FeedState(Enum):
    """Lifecycle states of the upstream feed."""

    DISCONNECTED = "disconnected"
    CREDENTIALS_MISSING = "credentials_missing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


def normalize_token(token: Any) -> str:
    """Trim a token and make sure it can be used as a registry key."""
    if isinstance(token, int) and not isinstance(token, bool):
        token = str(token)
    if not isinstance(token, str):
        raise InvalidSubscriptionRequest(f"Token must be a string, got {type(token).__name__}")
    token = token.strip()
    if not token:
        raise InvalidSubscriptionRequest("Token is empty")
    if "\x00" in token:
        raise InvalidSubscriptionRequest(f"Token contains NUL bytes: {token!r}")
    if not (token.isascii() and token.isprintable()):
        raise InvalidSubscriptionRequest(f"Token is not printable ASCII: {token!r}")
    if len(token) > MAX_TOKEN_LENGTH:
        raise InvalidSubscriptionRequest(f"Token longer than {MAX_TOKEN_LENGTH} chars: {token!r}")
    return token


@dataclass(frozen=True, slots=True)
class InstrumentKey:
    """An instrument as the exchange knows it: exchange segment plus token."""

    exchange: Exchange
    token: str

    @classmethod
    def create(cls, exchange: Any, token: Any) -> InstrumentKey:
        """Build a key from raw values, validating and normalizing both parts."""
        return cls(exchange=Exchange.parse(exchange), token=normalize_token(token))

    @classmethod
    def from_request(cls, item: Any) -> InstrumentKey:
        """Parse one ``{"token": ..., "exchange": ...}`` entry sent by a session."""
        if not isinstance(item, Mapping):
            raise InvalidSubscriptionRequest(f"Expected an object with token and exchange, got {item!r}")
        if "token" not in item or "exchange" not in item:
            raise InvalidSubscriptionRequest(f"Missing token or exchange in {dict(item)!r}")
        return cls.create(item["exchange"], item["token"])

    def to_dict(self) -> dict:
        return {"token": self.token, "exchange": self.exchange.name}

    def __str__(self) -> str:
        return f"{self.exchange.name}:{self.token}"


def _as_float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


@dataclass(frozen=True, slots=True)
class Tick:
    """One decoded price update. Prices carry two fractional digits."""

    token: str
    ltp: Decimal
    open: Decimal | None = None
    high: Decimal | None = None
    low: Decimal | None = None
    close: Decimal | None = None
    observed_at: float = field(default_factory=time.time)  # Unix seconds, set at decode time

    @property
    def is_valid(self) -> bool:
        """A real trade never prints at zero or below; such a tick means misaligned bytes."""
        return self.ltp > 0

    @property
    def room(self) -> str:
        return room_for(self.token)

    def to_message(self) -> dict:
        """Serialize for the downstream ``market-update`` event."""
        return {
            "symbol_token": self.token,
            "ltp": float(self.ltp),
            "open_price": _as_float(self.open),
            "high_price": _as_float(self.high),
            "low_price": _as_float(self.low),
            "close_price": _as_float(self.close),
            "updated_at": datetime.fromtimestamp(self.observed_at, tz=timezone.utc).isoformat(),
        }


def room_for(token: str) -> str:
    """Broadcast group name for a token."""
    return f"TOKEN:{token}"


@dataclass(frozen=True, slots=True)
class UpstreamCredentials:
    """Credentials for the upstream feed. Secrets stay out of repr()."""

    client_code: str
    feed_token: str = field(repr=False)
    api_key: str = field(repr=False)

    @property
    def is_complete(self) -> bool:
        return all(v and v.strip() for v in (self.client_code, self.feed_token, self.api_key))
