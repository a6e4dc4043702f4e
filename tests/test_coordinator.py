"""
Tests for the Append Coordinator.

Races between processes are simulated with store wrappers that slip a
competing write in between our FetchLast and our Write.
"""

import hashlib
import threading
import time

import pytest

from blocklog.core import (
    AppendCoordinator,
    AppendError,
    ChainForkError,
    ChainHead,
    RetryPolicy,
)
from blocklog.core.hasher import HashEngine
from blocklog.db.store import (
    InMemoryLedgerStore,
    SqliteLedgerStore,
    StoreConflictError,
    TransientStoreError,
)
from blocklog.observability import get_metrics

from conftest import DelegatingStore, TickingClock, competitor_draft, no_sleep


class RacingStore(DelegatingStore):
    """On the first append, another writer lands first with the same prev_hash."""

    def __init__(self, inner):
        super().__init__(inner)
        self.raced = False
        self.retracted = []

    def append(self, draft):
        if not self.raced:
            self.raced = True
            self.inner.append(competitor_draft(draft.prev_hash, "bob"))
        return self.inner.append(draft)

    def retract(self, sequence_id, block_hash):
        withdrawn = self.inner.retract(sequence_id, block_hash)
        self.retracted.append((sequence_id, withdrawn))
        return withdrawn


class ForkingStore(DelegatingStore):
    """Like RacingStore, but a third writer builds on our entry before we can withdraw it."""

    def append(self, draft):
        self.inner.append(competitor_draft(draft.prev_hash, "bob"))
        sequence_id = self.inner.append(draft)
        self.inner.append(competitor_draft(draft.block_hash, "carol"))
        return sequence_id


class FlakyStore(DelegatingStore):
    """Fails the first `failures` appends with the given error."""

    def __init__(self, inner, error, failures):
        super().__init__(inner)
        self.error = error
        self.failures = failures
        self.calls = 0

    def append(self, draft):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.inner.append(draft)


class SlowStore(DelegatingStore):
    """Adds network-like latency to every call on the append path."""

    def __init__(self, inner, latency=0.001):
        super().__init__(inner)
        self.latency = latency

    def read_last(self):
        time.sleep(self.latency)
        return self.inner.read_last()

    def read_by_id(self, sequence_id):
        time.sleep(self.latency)
        return self.inner.read_by_id(sequence_id)

    def append(self, draft):
        time.sleep(self.latency)
        return self.inner.append(draft)


def make_coordinator(store, **kwargs):
    kwargs.setdefault("clock", TickingClock())
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("policy", RetryPolicy(jitter=0.0))
    return AppendCoordinator(store, **kwargs)


class TestRetryPolicy:
    """Test retry configuration."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 5
        assert policy.base_delay_ms == 25
        assert policy.jitter == 1.0

    def test_linear_backoff(self):
        policy = RetryPolicy(base_delay_ms=25, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.025, 0.05, 0.075]

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay_ms=20, jitter=0.5)
        delays = [policy.delay_for(3) for _ in range(200)]
        assert all(0.03 <= d <= 0.09 for d in delays)
        assert len(set(delays)) > 1

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BLOCKLOG_APPEND_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("BLOCKLOG_APPEND_BASE_DELAY_MS", "10")
        monkeypatch.setenv("BLOCKLOG_APPEND_JITTER", "0.25")
        policy = RetryPolicy.from_env()
        assert policy.max_attempts == 3
        assert policy.base_delay_ms == 10
        assert policy.jitter == 0.25

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_rejects_jitter_above_one(self):
        with pytest.raises(ValueError, match="jitter"):
            RetryPolicy(jitter=1.5)


class TestChainHead:

    def test_empty_ledger_head(self):
        head = ChainHead.from_entry(None)
        assert head.is_empty
        assert head.block_hash == "0"


class TestAppend:
    """Test the happy path."""

    def test_genesis_links_to_zero(self, memory_store):
        """The first entry carries prev_hash '0'."""
        coordinator = make_coordinator(memory_store)
        assert coordinator.append("user_login", actor_name="alice") == 1
        assert memory_store.read_by_id(1).prev_hash == "0"

    def test_exact_hash_of_first_entry(self, memory_store):
        """The stored hash is SHA-256 over the seven fields."""
        t1 = "2024-01-01T12:00:00.000000Z"
        coordinator = make_coordinator(memory_store, clock=lambda: t1)
        coordinator.append(
            "domain_register",
            actor_name="alice",
            target_type="domain",
            target_name="alice.example",
            details_json='{"amount":10}',
        )

        expected = hashlib.sha256(
            f'0|domain_register|alice|domain|alice.example|{{"amount":10}}|{t1}'.encode("utf-8")
        ).hexdigest()
        entry = memory_store.read_by_id(1)
        assert entry.block_hash == expected
        assert entry.timestamp == t1

    def test_entries_link_to_predecessor(self, memory_store):
        coordinator = make_coordinator(memory_store)
        for _ in range(3):
            coordinator.append("user_login", actor_name="alice")

        first, second, third = (memory_store.read_by_id(i) for i in (1, 2, 3))
        assert second.prev_hash == first.block_hash
        assert third.prev_hash == second.block_hash

    def test_metrics_record_append(self, memory_store):
        make_coordinator(memory_store).append("user_login")
        summary = get_metrics().get_summary()
        assert summary["entries_appended"] == 1
        assert summary["append_races"] == 0


class TestRaces:
    """Test race detection and recovery."""

    def test_race_loser_fails_at_write(self, memory_store):
        """Two appends read the same head: ours collides on prev_hash and is retried on top."""
        store = RacingStore(memory_store)
        coordinator = make_coordinator(store)

        sequence_id = coordinator.append("user_login", actor_name="alice")

        assert sequence_id == 2
        assert memory_store.count() == 2
        bob, alice = memory_store.read_by_id(1), memory_store.read_by_id(2)
        assert bob.actor_name == "bob"
        assert alice.actor_name == "alice"
        assert alice.prev_hash == bob.block_hash
        assert store.retracted == []
        assert get_metrics().get_summary()["append_races"] == 1

    def test_link_check_withdraws_raced_entry(self):
        """Without prev_hash uniqueness both writes land; VerifyLink withdraws ours."""
        inner = InMemoryLedgerStore(unique_prev_hash=False)
        store = RacingStore(inner)
        coordinator = make_coordinator(store)

        sequence_id = coordinator.append("user_login", actor_name="alice")

        assert sequence_id == 2
        assert store.retracted == [(2, True)]
        assert inner.count() == 2
        assert inner.read_by_id(2).prev_hash == inner.read_by_id(1).block_hash
        assert get_metrics().get_summary()["append_races"] == 1

    def test_race_logged_as_warning(self, memory_store, caplog):
        coordinator = make_coordinator(RacingStore(memory_store))
        with caplog.at_level("WARNING", logger="blocklog.core.coordinator"):
            coordinator.append("user_login", actor_name="alice")
        assert any("race" in r.getMessage().lower() for r in caplog.records)

    def test_store_conflict_is_a_race(self, memory_store):
        """A uniqueness conflict means nothing was written; just retry."""
        store = FlakyStore(memory_store, StoreConflictError("duplicate"), failures=2)
        sleeps = []
        coordinator = make_coordinator(store, sleep=sleeps.append)

        assert coordinator.append("user_login") == 1
        assert store.calls == 3
        assert sleeps == [0.025, 0.05]
        assert get_metrics().get_summary()["append_races"] == 2

    def test_unwithdrawable_entry_raises_fork(self):
        """If another writer built on our raced entry, it stays and the caller is told."""
        inner = InMemoryLedgerStore(unique_prev_hash=False)
        coordinator = make_coordinator(ForkingStore(inner))

        with pytest.raises(ChainForkError) as exc_info:
            coordinator.append("user_login", actor_name="alice")

        assert exc_info.value.sequence_id == 2
        assert exc_info.value.repair_from_id == 2
        assert inner.count() == 3
        assert inner.read_by_id(2).actor_name == "alice"
        assert get_metrics().get_summary()["chain_forks"] == 1


class TestFailures:
    """Test retry exhaustion."""

    def test_transient_errors_exhaust_retries(self, memory_store):
        store = FlakyStore(memory_store, TransientStoreError("db down"), failures=100)
        sleeps = []
        coordinator = make_coordinator(store, sleep=sleeps.append)

        with pytest.raises(AppendError, match="5 attempts") as exc_info:
            coordinator.append("user_login")

        assert exc_info.value.attempts == 5
        assert isinstance(exc_info.value.__cause__, TransientStoreError)
        assert store.calls == 5
        assert sleeps == [0.025, 0.05, 0.075, 0.1]
        assert memory_store.count() == 0
        assert get_metrics().get_summary()["append_failures"] == 1

    def test_transient_then_success(self, memory_store):
        store = FlakyStore(memory_store, TransientStoreError("blip"), failures=1)
        coordinator = make_coordinator(store)
        assert coordinator.append("user_login") == 1

    def test_custom_attempt_count(self, memory_store):
        store = FlakyStore(memory_store, TransientStoreError("db down"), failures=100)
        coordinator = make_coordinator(store, policy=RetryPolicy(max_attempts=2))
        with pytest.raises(AppendError):
            coordinator.append("user_login")
        assert store.calls == 2


class TestConcurrency:
    """Concurrent appends, through one coordinator and through many."""

    def test_concurrent_appends_on_empty_ledger(self):
        """N concurrent appends -> exactly N entries, ids 1..N, one chain."""
        store = InMemoryLedgerStore()
        coordinator = AppendCoordinator(store, policy=RetryPolicy(), sleep=no_sleep)
        n = 20
        barrier = threading.Barrier(n)
        errors = []

        def worker(i):
            barrier.wait()
            try:
                coordinator.append("user_login", actor_name=f"user-{i}")
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        entries, total = store.read_range(limit=n, order="asc")
        assert total == n
        assert [e.sequence_id for e in entries] == list(range(1, n + 1))
        assert entries[0].prev_hash == "0"
        for prev, entry in zip(entries, entries[1:]):
            assert entry.prev_hash == prev.block_hash

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_independent_writers_on_empty_ledger(self, backend, make_ledger, tmp_path):
        """
        One ledger per writer and no shared lock, as with separate worker
        processes: every call completes and the result is one chain.
        """
        if backend == "memory":
            inner = InMemoryLedgerStore()
        else:
            inner = SqliteLedgerStore(tmp_path / "ledger.db")
        store = SlowStore(inner)
        n = 20
        ledgers = [
            make_ledger(
                store,
                serialize_local=False,
                policy=RetryPolicy(),
                clock=HashEngine.utc_now_timestamp,
                sleep=time.sleep,
            )
            for _ in range(n)
        ]
        barrier = threading.Barrier(n)
        errors = []

        def worker(i):
            barrier.wait()
            try:
                ledgers[i].record_event("user_login", actor_name=f"user-{i}")
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert inner.count() == n
        entries, _ = inner.read_range(limit=n, order="asc")
        assert [e.sequence_id for e in entries] == list(range(1, n + 1))
        assert sorted(e.actor_name for e in entries) == sorted(f"user-{i}" for i in range(n))
        report = ledgers[0].verify_chain()
        assert report.valid
        assert report.total_checked == n
        assert get_metrics().get_summary()["chain_forks"] == 0
