"""Thread-safe registry of which sessions want which instruments."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from .models import Exchange, InstrumentKey


@dataclass(frozen=True, slots=True)
class AddResult:
    already_subscribed_upstream: bool


@dataclass(frozen=True, slots=True)
class RemoveResult:
    now_empty: bool


class SubscriptionRegistry:
    """Maps each InstrumentKey to the set of session ids interested in it.

    A key is present only while its interest set is non-empty, so the set of
    keys is also the set of instruments that should be subscribed upstream.

    Writers: SessionSubscriptionHandler (subscribe, unsubscribe, disconnect).
    Readers: FanoutBroadcaster, UpstreamFeedConnection (resubscribe on connect).
    """

    def __init__(self) -> None:
        self._interest: dict[InstrumentKey, set[str]] = {}
        self._by_session: dict[str, set[InstrumentKey]] = {}
        self._lock = Lock()
        self._version: int = 0  # Bumped on every change to the upstream-subscribed set

    def add_interest(self, key: InstrumentKey, session_id: str) -> AddResult:
        """Record that a session wants a key. Adding an existing pair changes nothing."""
        with self._lock:
            sessions = self._interest.get(key)
            already = bool(sessions)
            if sessions is None:
                sessions = self._interest[key] = set()
                self._version += 1
            sessions.add(session_id)
            self._by_session.setdefault(session_id, set()).add(key)
            return AddResult(already_subscribed_upstream=already)

    def remove_interest(self, key: InstrumentKey, session_id: str) -> RemoveResult:
        """Drop one (key, session) pair. ``now_empty`` is True only if this removed the last session."""
        with self._lock:
            sessions = self._interest.get(key)
            if not sessions or session_id not in sessions:
                return RemoveResult(now_empty=False)
            sessions.discard(session_id)
            self._forget_session_key(session_id, key)
            if sessions:
                return RemoveResult(now_empty=False)
            del self._interest[key]
            self._version += 1
            return RemoveResult(now_empty=True)

    def remove_session(self, session_id: str) -> list[InstrumentKey]:
        """Remove a session everywhere. Returns the keys nobody is interested in anymore."""
        with self._lock:
            keys = self._by_session.pop(session_id, set())
            emptied: list[InstrumentKey] = []
            for key in keys:
                sessions = self._interest.get(key)
                if sessions is None:
                    continue
                sessions.discard(session_id)
                if not sessions:
                    del self._interest[key]
                    emptied.append(key)
            if emptied:
                self._version += 1
            return sorted(emptied, key=str)

    def interested_sessions(self, key: InstrumentKey) -> frozenset[str]:
        with self._lock:
            return frozenset(self._interest.get(key, ()))

    def sessions_for_token(self, token: str) -> frozenset[str]:
        """Sessions interested in a token on any exchange.

        Upstream frames carry no exchange, so fan-out is keyed on token alone.
        """
        with self._lock:
            found: set[str] = set()
            for exchange in Exchange:
                found.update(self._interest.get(InstrumentKey(exchange, token), ()))
            return frozenset(found)

    def active_keys(self) -> list[InstrumentKey]:
        """Snapshot of every key with at least one interested session."""
        with self._lock:
            return sorted(self._interest, key=str)

    def session_keys(self, session_id: str) -> frozenset[InstrumentKey]:
        with self._lock:
            return frozenset(self._by_session.get(session_id, ()))

    def session_count(self) -> int:
        with self._lock:
            return len(self._by_session)

    def _forget_session_key(self, session_id: str, key: InstrumentKey) -> None:
        keys = self._by_session.get(session_id)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self._by_session[session_id]

    @property
    def version(self) -> int:
        """Current version counter. Changes whenever the active key set changes."""
        with self._lock:
            return self._version

    def __len__(self) -> int:
        with self._lock:
            return len(self._interest)

    def __contains__(self, key: InstrumentKey) -> bool:
        with self._lock:
            return key in self._interest
