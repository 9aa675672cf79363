"""Market tick relay: one upstream broker feed fanned out to many sessions.

Public API:
    decode                      - Binary frame -> Tick or DecodeFailure
    Tick, InstrumentKey         - Immutable data models
    SubscriptionRegistry        - Thread-safe instrument -> sessions map
    FeedSource                  - Abstract interface for upstream feeds
    UpstreamFeedConnection      - Angel One SmartStream connection manager
    FanoutBroadcaster           - Delivers ticks to interested sessions
    SessionSubscriptionHandler  - Session subscribe/disconnect entry point
    create_feed_source          - Factory that selects broker feed or simulator
    create_stream_router        - FastAPI router factory for the session endpoint
"""

from .broadcaster import FanoutBroadcaster
from .codec import DecodeFailure, decode
from .factory import create_feed_source
from .handler import SessionSubscriptionHandler
from .interface import FeedSource
from .models import Exchange, FeedState, InstrumentKey, Tick, UpstreamCredentials
from .registry import SubscriptionRegistry
from .stream import create_stream_router
from .transport import WebSocketTransport
from .upstream import UpstreamFeedConnection

__all__ = [
    "DecodeFailure",
    "Exchange",
    "FanoutBroadcaster",
    "FeedSource",
    "FeedState",
    "InstrumentKey",
    "SessionSubscriptionHandler",
    "SubscriptionRegistry",
    "Tick",
    "UpstreamCredentials",
    "UpstreamFeedConnection",
    "WebSocketTransport",
    "create_feed_source",
    "create_stream_router",
    "decode",
]
