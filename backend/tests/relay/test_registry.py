"""Tests for SubscriptionRegistry."""

import threading

from app.relay.models import InstrumentKey
from app.relay.registry import SubscriptionRegistry

NIFTY = InstrumentKey.create("NSE", "99926000")
RELIANCE = InstrumentKey.create("NSE", "2885")
RELIANCE_BSE = InstrumentKey.create("BSE", "2885")


class TestSubscriptionRegistry:
    """Unit tests for the SubscriptionRegistry."""

    def test_first_interest_not_yet_upstream(self):
        """The first session for a key reports it was not subscribed upstream."""
        registry = SubscriptionRegistry()
        result = registry.add_interest(NIFTY, "S1")
        assert result.already_subscribed_upstream is False
        assert registry.interested_sessions(NIFTY) == {"S1"}

    def test_second_interest_already_upstream(self):
        """Test a second session on the same key."""
        registry = SubscriptionRegistry()
        registry.add_interest(NIFTY, "S1")
        result = registry.add_interest(NIFTY, "S2")
        assert result.already_subscribed_upstream is True
        assert registry.interested_sessions(NIFTY) == {"S1", "S2"}

    def test_add_is_idempotent(self):
        """Adding the same pair twice leaves the same state as adding it once."""
        once = SubscriptionRegistry()
        once.add_interest(NIFTY, "S1")

        twice = SubscriptionRegistry()
        twice.add_interest(NIFTY, "S1")
        twice.add_interest(NIFTY, "S1")

        assert twice.active_keys() == once.active_keys()
        assert twice.interested_sessions(NIFTY) == once.interested_sessions(NIFTY)
        assert twice.session_keys("S1") == once.session_keys("S1")
        assert twice.version == once.version

    def test_remove_last_session_empties_key(self):
        """Removing the only session drops the key."""
        registry = SubscriptionRegistry()
        registry.add_interest(NIFTY, "S1")
        assert registry.remove_interest(NIFTY, "S1").now_empty is True
        assert NIFTY not in registry
        assert registry.active_keys() == []

    def test_remove_with_others_left(self):
        """Test that the key stays while other sessions remain."""
        registry = SubscriptionRegistry()
        registry.add_interest(NIFTY, "S1")
        registry.add_interest(NIFTY, "S2")
        assert registry.remove_interest(NIFTY, "S1").now_empty is False
        assert registry.interested_sessions(NIFTY) == {"S2"}

    def test_remove_absent_is_noop(self):
        """Removing a pair that does not exist changes nothing."""
        registry = SubscriptionRegistry()
        registry.add_interest(NIFTY, "S1")
        version = registry.version
        assert registry.remove_interest(NIFTY, "S9").now_empty is False
        assert registry.remove_interest(RELIANCE, "S1").now_empty is False
        assert registry.interested_sessions(NIFTY) == {"S1"}
        assert registry.version == version

    def test_remove_twice_reports_empty_once(self):
        """Only the call that removed the last session reports now_empty."""
        registry = SubscriptionRegistry()
        registry.add_interest(NIFTY, "S1")
        assert registry.remove_interest(NIFTY, "S1").now_empty is True
        assert registry.remove_interest(NIFTY, "S1").now_empty is False

    def test_remove_session(self):
        """A disconnect removes the session everywhere and reports emptied keys."""
        registry = SubscriptionRegistry()
        registry.add_interest(NIFTY, "S1")
        registry.add_interest(RELIANCE, "S1")
        registry.add_interest(NIFTY, "S2")

        emptied = registry.remove_session("S1")

        assert emptied == [RELIANCE]
        assert registry.interested_sessions(NIFTY) == {"S2"}
        assert registry.session_keys("S1") == frozenset()

    def test_remove_unknown_session(self):
        registry = SubscriptionRegistry()
        assert registry.remove_session("nobody") == []

    def test_sessions_for_token_spans_exchanges(self):
        """Fan-out lookup by token collects sessions from every exchange."""
        registry = SubscriptionRegistry()
        registry.add_interest(RELIANCE, "S1")
        registry.add_interest(RELIANCE_BSE, "S2")
        registry.add_interest(NIFTY, "S3")
        assert registry.sessions_for_token("2885") == {"S1", "S2"}
        assert registry.sessions_for_token("unknown") == frozenset()

    def test_key_present_iff_interest_non_empty(self):
        """active_keys always equals the keys with at least one session."""
        registry = SubscriptionRegistry()
        steps = [
            ("add", NIFTY, "S1"),
            ("add", RELIANCE, "S2"),
            ("add", NIFTY, "S2"),
            ("remove", NIFTY, "S1"),
            ("remove", RELIANCE, "S2"),
            ("remove", NIFTY, "S2"),
        ]
        for op, key, session in steps:
            if op == "add":
                registry.add_interest(key, session)
            else:
                registry.remove_interest(key, session)
            for k in (NIFTY, RELIANCE):
                assert (k in registry.active_keys()) == bool(registry.interested_sessions(k))

    def test_snapshots_are_copies(self):
        """Returned sets do not change when the registry does."""
        registry = SubscriptionRegistry()
        registry.add_interest(NIFTY, "S1")
        snapshot = registry.interested_sessions(NIFTY)
        registry.add_interest(NIFTY, "S2")
        assert snapshot == {"S1"}

    def test_len_contains_and_session_count(self):
        """Test __len__, __contains__ and session_count."""
        registry = SubscriptionRegistry()
        assert len(registry) == 0
        registry.add_interest(NIFTY, "S1")
        registry.add_interest(RELIANCE, "S2")
        assert len(registry) == 2
        assert NIFTY in registry
        assert RELIANCE_BSE not in registry
        assert registry.session_count() == 2

    def test_version_tracks_active_set(self):
        """Version moves only when the set of active keys changes."""
        registry = SubscriptionRegistry()
        v0 = registry.version
        registry.add_interest(NIFTY, "S1")
        assert registry.version == v0 + 1
        registry.add_interest(NIFTY, "S2")
        assert registry.version == v0 + 1
        registry.remove_session("S1")
        assert registry.version == v0 + 1
        registry.remove_session("S2")
        assert registry.version == v0 + 2

    def test_concurrent_mutation(self):
        """Parallel writers leave a consistent registry."""
        registry = SubscriptionRegistry()

        def churn(session_id: str) -> None:
            for _ in range(200):
                registry.add_interest(NIFTY, session_id)
                registry.add_interest(RELIANCE, session_id)
                registry.remove_session(session_id)
            registry.add_interest(NIFTY, session_id)

        threads = [threading.Thread(target=churn, args=(f"S{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.interested_sessions(NIFTY) == {f"S{i}" for i in range(8)}
        assert RELIANCE not in registry

    def test_version_read_waits_for_writer(self):
        """Reading the version blocks while a writer holds the lock."""
        registry = SubscriptionRegistry()
        seen: list[int] = []

        with registry._lock:
            reader = threading.Thread(target=lambda: seen.append(registry.version))
            reader.start()
            reader.join(timeout=0.05)
            assert reader.is_alive()
            registry._version += 1

        reader.join(timeout=1.0)
        assert seen == [1]

    def test_version_monotonic_under_churn(self):
        """Concurrent readers never see the version go backwards."""
        registry = SubscriptionRegistry()
        readings: list[int] = []
        done = threading.Event()

        def read() -> None:
            while not done.is_set():
                readings.append(registry.version)

        reader = threading.Thread(target=read)
        reader.start()
        for i in range(500):
            registry.add_interest(NIFTY, f"S{i}")
            registry.remove_session(f"S{i}")
        done.set()
        reader.join()

        assert readings == sorted(readings)
        assert registry.version == 1000
