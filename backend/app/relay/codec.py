"""Binary tick decoder and upstream control messages.

Frame layout (little-endian, byte offsets from frame start):

    [0]        subscription mode
    [1]        exchange type
    [2, 27)    token, ASCII, NUL padded
    [43, 47)   last traded price x 100 (int32)
    [59, 63)   open x 100
    [91, 95)   low x 100
    [99, 103)  high x 100
    [107, 111) close x 100

LTP-mode packets are 51 bytes and carry no OHLC. Quote-mode packets are
123 bytes. OHLC is only read when the frame covers offset 111.
"""

from __future__ import annotations

import struct
import time
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from urllib.parse import urlencode

from .exceptions import InvalidSubscriptionRequest
from .models import Exchange, InstrumentKey, Tick, UpstreamCredentials

TOKEN_START = 2
TOKEN_END = 27
LTP_OFFSET = 43
OPEN_OFFSET = 59
LOW_OFFSET = 91
HIGH_OFFSET = 99
CLOSE_OFFSET = 107

MIN_FRAME_LENGTH = 51  # LTP-mode packet size
OHLC_FRAME_LENGTH = 111  # end of the close field
QUOTE_FRAME_LENGTH = 123

ACTION_UNSUBSCRIBE = 0
ACTION_SUBSCRIBE = 1
MODE_LTP = 1
MODE_QUOTE = 2

_INT32 = struct.Struct("<i")


@dataclass(frozen=True, slots=True)
class DecodeFailure:
    """A frame that could not be turned into a Tick."""

    reason: str
    length: int = 0


def _price(frame: bytes, offset: int) -> Decimal:
    (raw,) = _INT32.unpack_from(frame, offset)
    return Decimal(raw).scaleb(-2)


def decode(frame: bytes | bytearray | memoryview, observed_at: float | None = None) -> Tick | DecodeFailure:
    """Decode one binary frame. Never raises; bad input yields a DecodeFailure."""
    if not isinstance(frame, (bytes, bytearray, memoryview)):
        return DecodeFailure(f"expected bytes, got {type(frame).__name__}")
    frame = bytes(frame)
    length = len(frame)
    if length < MIN_FRAME_LENGTH:
        return DecodeFailure(f"frame too short ({length} < {MIN_FRAME_LENGTH})", length)

    raw_token = frame[TOKEN_START:TOKEN_END].split(b"\x00", 1)[0]
    try:
        token = raw_token.decode("ascii").strip()
    except UnicodeDecodeError:
        return DecodeFailure("token is not ASCII", length)
    if not token or not token.isprintable():
        return DecodeFailure(f"garbled token {raw_token!r}", length)

    try:
        ltp = _price(frame, LTP_OFFSET)
        ohlc: dict[str, Decimal | None] = {"open": None, "high": None, "low": None, "close": None}
        if length >= OHLC_FRAME_LENGTH:
            ohlc = {
                "open": _price(frame, OPEN_OFFSET),
                "high": _price(frame, HIGH_OFFSET),
                "low": _price(frame, LOW_OFFSET),
                "close": _price(frame, CLOSE_OFFSET),
            }
    except struct.error as e:
        return DecodeFailure(f"out of range read: {e}", length)

    return Tick(
        token=token,
        ltp=ltp,
        observed_at=observed_at if observed_at is not None else time.time(),
        **ohlc,
    )


def _scaled(price: float | Decimal | None) -> int:
    if price is None:
        return 0
    return int(round(Decimal(str(price)) * 100))


def encode_frame(
    token: str,
    ltp: float | Decimal,
    open: float | Decimal | None = None,
    high: float | Decimal | None = None,
    low: float | Decimal | None = None,
    close: float | Decimal | None = None,
    exchange: Exchange = Exchange.NSE,
    length: int = QUOTE_FRAME_LENGTH,
) -> bytes:
    """Build a frame in the upstream layout. Fields past ``length`` are left out."""
    token_bytes = token.encode("ascii")
    if len(token_bytes) > TOKEN_END - TOKEN_START:
        raise ValueError(f"Token too long for frame: {token!r}")
    frame = bytearray(max(length, CLOSE_OFFSET + 4))
    frame[0] = MODE_QUOTE if length >= OHLC_FRAME_LENGTH else MODE_LTP
    frame[1] = exchange.value
    frame[TOKEN_START:TOKEN_START + len(token_bytes)] = token_bytes
    _INT32.pack_into(frame, LTP_OFFSET, _scaled(ltp))
    _INT32.pack_into(frame, OPEN_OFFSET, _scaled(open))
    _INT32.pack_into(frame, LOW_OFFSET, _scaled(low))
    _INT32.pack_into(frame, HIGH_OFFSET, _scaled(high))
    _INT32.pack_into(frame, CLOSE_OFFSET, _scaled(close))
    return bytes(frame[:length])


def build_control_message(action: int, keys: Iterable[InstrumentKey], mode: int = MODE_QUOTE) -> dict:
    """Build a subscribe/unsubscribe payload, one tokenList entry per exchange."""
    if action not in (ACTION_SUBSCRIBE, ACTION_UNSUBSCRIBE):
        raise ValueError(f"Unknown action: {action}")
    grouped: dict[int, set[str]] = {}
    for key in keys:
        if not isinstance(key.exchange, Exchange):
            raise InvalidSubscriptionRequest(f"Unmapped exchange for token {key.token}: {key.exchange!r}")
        grouped.setdefault(key.exchange.value, set()).add(key.token)
    return {
        "action": action,
        "params": {
            "mode": mode,
            "tokenList": [
                {"exchangeType": exchange_type, "tokens": sorted(tokens)}
                for exchange_type, tokens in sorted(grouped.items())
            ],
        },
    }


def build_feed_url(credentials: UpstreamCredentials, host: str, path: str) -> str:
    """Upstream WebSocket URL with credentials in the query string."""
    query = urlencode(
        {
            "clientCode": credentials.client_code,
            "feedToken": credentials.feed_token,
            "apiKey": credentials.api_key,
        }
    )
    return f"wss://{host}/{path.lstrip('/')}?{query}"
