"""
Tests for the Chain Verifier.
"""

import pytest

from blocklog.core import AppendCoordinator, ChainInvariantViolation, ChainVerifier, RetryPolicy
from blocklog.core.hasher import HashEngine
from blocklog.core.verifier import BLOCK_HASH_MISMATCH, PREV_HASH_MISMATCH
from blocklog.db.store import InMemoryLedgerStore, SqliteLedgerStore

from conftest import DelegatingStore, TickingClock, competitor_draft, no_sleep, tamper_details


def tamper_prev_hash(store, sequence_id: int, prev_hash: str) -> None:
    entry = store.read_by_id(sequence_id)
    store.overwrite_hash_fields(sequence_id, prev_hash, entry.block_hash)


class TestVerifyChain:
    """Full-chain verification against both embedded backends."""

    @pytest.fixture(params=["memory", "sqlite"])
    def ledger(self, request, make_ledger, tmp_path):
        if request.param == "memory":
            return make_ledger(InMemoryLedgerStore())
        return make_ledger(SqliteLedgerStore(tmp_path / "ledger.db"))

    @pytest.fixture
    def three_entries(self, ledger):
        ledger.record_event("user_register", actor_name="alice", target_type="user", target_name="alice")
        ledger.record_event("domain_register", actor_name="alice", target_type="domain",
                            target_name="alice.example", details={"amount": 10})
        ledger.record_event("domain_approve", actor_name="bob", target_type="domain",
                            target_name="alice.example")
        return ledger

    def test_empty_ledger_is_valid(self, ledger):
        report = ledger.verify_chain()
        assert report.valid
        assert report.total_checked == 0
        assert report.head_id is None
        assert report.head_hash is None

    def test_intact_chain(self, three_entries):
        """Three untouched entries verify, all three checked."""
        report = three_entries.verify_chain()
        assert report.valid
        assert report.total_checked == 3
        assert report.first_invalid_id is None
        assert report.head_id == 3

    def test_tampered_content_detected(self, three_entries):
        """Editing details of entry 2 breaks entry 2's own hash."""
        tamper_details(three_entries.store, 2, '{"amount":99}')

        report = three_entries.verify_chain()
        assert not report.valid
        assert report.first_invalid_id == 2
        assert report.violation == BLOCK_HASH_MISMATCH
        assert report.total_checked == 2
        assert report.actual == three_entries.get_entry(2).block_hash

    def test_broken_link_detected(self, three_entries):
        tamper_prev_hash(three_entries.store, 3, "a" * 64)

        report = three_entries.verify_chain()
        assert not report.valid
        assert report.first_invalid_id == 3
        assert report.violation == PREV_HASH_MISMATCH
        assert report.expected == three_entries.get_entry(2).block_hash
        assert report.actual == "a" * 64

    def test_tampered_genesis_link(self, three_entries):
        tamper_prev_hash(three_entries.store, 1, "b" * 64)
        report = three_entries.verify_chain()
        assert report.first_invalid_id == 1
        assert report.violation == PREV_HASH_MISMATCH
        assert report.expected == "0"


class TestSegments:
    """Verifying part of the chain."""

    @pytest.fixture
    def five_entries(self, ledger):
        for n in range(5):
            ledger.record_event("user_register", actor_name=f"user-{n}")
        return ledger

    def test_start_id_uses_stored_anchor(self, five_entries):
        report = five_entries.verify_chain(start_id=3)
        assert report.valid
        assert report.total_checked == 3

    def test_explicit_expected_prev_hash(self, five_entries):
        anchor = five_entries.get_entry(2).block_hash
        assert five_entries.verify_chain(start_id=3, expected_prev_hash=anchor).valid

        report = five_entries.verify_chain(start_id=3, expected_prev_hash="c" * 64)
        assert not report.valid
        assert report.first_invalid_id == 3
        assert report.violation == PREV_HASH_MISMATCH

    def test_end_id_bounds_the_walk(self, five_entries):
        report = five_entries.verify_chain(start_id=2, end_id=3)
        assert report.valid
        assert report.total_checked == 2
        assert report.head_id == 3
        assert report.head_hash == five_entries.get_entry(3).block_hash

    def test_segment_before_damage_is_valid(self, five_entries):
        tamper_details(five_entries.store, 4, '{"x":1}')
        assert five_entries.verify_chain(end_id=3).valid
        assert not five_entries.verify_chain().valid

    def test_start_id_must_be_positive(self, five_entries):
        with pytest.raises(ValueError, match="start_id"):
            five_entries.verify_chain(start_id=0)

    def test_missing_anchor_needs_expected_prev_hash(self):
        """A segment whose anchor was never loaded can only be checked with a given hash."""
        source = InMemoryLedgerStore()
        coordinator = AppendCoordinator(source, policy=RetryPolicy(), clock=TickingClock(), sleep=no_sleep)
        for n in range(4):
            coordinator.append("user_register", actor_name=f"user-{n}")
        entries, _ = source.read_range(order="asc")

        segment = InMemoryLedgerStore.from_entries(entries[2:])
        verifier = ChainVerifier(segment)
        with pytest.raises(ValueError, match="expected_prev_hash"):
            verifier.verify(start_id=3)

        report = verifier.verify(start_id=3, expected_prev_hash=entries[1].block_hash)
        assert report.valid
        assert report.total_checked == 2


class TestConsistentRead:
    """The boundary is fixed at walk start."""

    def test_appends_during_walk_are_ignored(self, make_ledger, memory_store):
        ledger = make_ledger(memory_store)
        for n in range(4):
            ledger.record_event("user_register", actor_name=f"user-{n}")
        head_hash = ledger.head().block_hash

        class GrowingStore(DelegatingStore):
            def read_after(self, after_id, limit, until_id=None):
                tail = self.inner.read_last()
                self.inner.append(competitor_draft(tail.block_hash, f"late-{tail.sequence_id}"))
                return self.inner.read_after(after_id, limit, until_id)

        report = ChainVerifier(GrowingStore(memory_store), page_size=2).verify()

        assert report.valid
        assert report.total_checked == 4
        assert report.head_id == 4
        assert report.head_hash == head_hash
        assert memory_store.count() > 4

    def test_small_pages_cover_whole_chain(self, make_ledger, memory_store):
        ledger = make_ledger(memory_store)
        for n in range(7):
            ledger.record_event("user_register", actor_name=f"user-{n}")
        report = ChainVerifier(memory_store, page_size=3).verify()
        assert report.total_checked == 7


class TestEnsureValid:

    def test_raises_on_violation(self, ledger):
        ledger.record_event("user_register", actor_name="alice")
        ledger.record_event("user_ban", actor_name="bob", target_name="alice")
        tamper_details(ledger.store, 2, '{"reason":"spam"}')

        with pytest.raises(ChainInvariantViolation) as exc_info:
            ledger.verifier.ensure_valid()
        assert exc_info.value.sequence_id == 2
        assert exc_info.value.violation == BLOCK_HASH_MISMATCH

    def test_returns_report_when_valid(self, ledger):
        ledger.record_event("user_register", actor_name="alice")
        assert ledger.verifier.ensure_valid().total_checked == 1

    def test_rejects_bad_page_size(self, memory_store):
        with pytest.raises(ValueError):
            ChainVerifier(memory_store, page_size=-1)

    def test_report_to_dict(self, ledger):
        ledger.record_event("user_register", actor_name="alice")
        data = ledger.verify_chain().to_dict()
        assert data["valid"] is True
        assert data["total_checked"] == 1
        assert data["violation"] is None

    def test_recomputation_uses_stored_fields(self, ledger):
        ledger.record_event("user_register", actor_name="alice", details={"a": 1})
        entry = ledger.get_entry(1)
        assert HashEngine.compute_for(entry) == entry.block_hash
