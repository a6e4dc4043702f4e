"""
Tests for the Audit Ledger front door.

Demonstrates the event lifecycle as a producer sees it:
1. Record events
2. Page through them newest first
3. Verify chain integrity
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from blocklog.core import CanonicalSerializationError
from blocklog.core.ledger import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, clamp_limit
from blocklog.schemas import Action, AuditEvent, EntryFilter, is_known_action, normalize_action


class TestActions:
    """Test action tags."""

    def test_enum_member_normalizes_to_value(self):
        assert normalize_action(Action.DOMAIN_REGISTER) == "domain_register"

    def test_unknown_but_well_formed_tag_allowed(self):
        """New producers may use tags before the enum learns them."""
        assert normalize_action("invoice_paid") == "invoice_paid"
        assert not is_known_action("invoice_paid")
        assert is_known_action("user_ban")

    @pytest.mark.parametrize("bad", ["", "User_Ban", "user ban", "9lives", "x" * 65, None])
    def test_malformed_tags_rejected(self, bad):
        with pytest.raises(ValueError):
            normalize_action(bad)


class TestRecord:
    """Test recording events."""

    def test_record_event_returns_ids(self, ledger):
        assert ledger.record_event(Action.USER_REGISTER, actor_name="alice") == 1
        assert ledger.record_event("user_ban", actor_name="bob", target_type="user", target_name="alice") == 2
        assert ledger.entry_count == 2

    def test_details_stored_canonically(self, ledger):
        ledger.record_event("setting_update", details={"b": 2, "a": Decimal("0.5"), "c": None})
        assert ledger.get_entry(1).details == '{"a":"0.5","b":2,"c":null}'

    def test_empty_details_stored_as_null(self, ledger):
        ledger.record_event("setting_update", details={})
        assert ledger.get_entry(1).details is None

    def test_float_details_rejected_before_write(self, ledger):
        with pytest.raises(CanonicalSerializationError):
            ledger.record_event("setting_update", details={"ratio": 0.5})
        assert ledger.entry_count == 0

    def test_bad_action_rejected_before_write(self, ledger):
        with pytest.raises(ValueError):
            ledger.record_event("Not A Tag")
        assert ledger.entry_count == 0

    def test_record_audit_event(self, ledger):
        event = AuditEvent(
            action="domain_register",
            actor_name="alice",
            target_type="domain",
            target_name="alice.example",
            details={"amount": 10},
        )
        sequence_id = ledger.record(event)
        entry = ledger.get_entry(sequence_id)
        assert entry.action == "domain_register"
        assert entry.details == '{"amount":10}'

    def test_audit_event_validates_action(self):
        with pytest.raises(ValidationError):
            AuditEvent(action="Bad Tag")

    def test_head(self, ledger):
        assert ledger.head() is None
        ledger.record_event("user_register", actor_name="alice")
        ledger.record_event("user_register", actor_name="bob")
        assert ledger.head().sequence_id == 2
        assert ledger.head().actor_name == "bob"


class TestList:
    """Test paging."""

    @pytest.fixture
    def ten_entries(self, ledger):
        for n in range(10):
            action = "user_register" if n % 2 == 0 else "domain_register"
            ledger.record_event(action, actor_name=f"user-{n % 3}")
        return ledger

    def test_newest_first(self, ten_entries):
        entries, total = ten_entries.list_events(limit=3)
        assert [e.sequence_id for e in entries] == [10, 9, 8]
        assert total == 10

    def test_offset(self, ten_entries):
        entries, _ = ten_entries.list_events(limit=3, offset=8)
        assert [e.sequence_id for e in entries] == [2, 1]

    def test_filters(self, ten_entries):
        entries, total = ten_entries.list_events(filters=EntryFilter(action="domain_register"))
        assert total == 5
        assert all(e.action == "domain_register" for e in entries)

    def test_negative_offset(self, ten_entries):
        with pytest.raises(ValueError, match="offset"):
            ten_entries.list_events(offset=-1)

    @pytest.mark.parametrize(
        "requested,effective",
        [(None, DEFAULT_LIST_LIMIT), (0, DEFAULT_LIST_LIMIT), (1, 1), (1000, MAX_LIST_LIMIT), (-5, 1)],
    )
    def test_clamp_limit(self, requested, effective):
        assert clamp_limit(requested) == effective


class TestIntegrity:
    """Test that recorded events form one verifiable chain."""

    def test_chain_verifies(self, ledger):
        for n in range(5):
            ledger.record_event("user_register", actor_name=f"user-{n}")
        report = ledger.verify_chain()
        assert report.valid
        assert report.total_checked == 5

    def test_sequence_ids_are_contiguous(self, ledger):
        ids = [ledger.record_event("user_register") for _ in range(5)]
        assert ids == [1, 2, 3, 4, 5]

    def test_each_entry_links_to_previous(self, ledger):
        for _ in range(3):
            ledger.record_event("user_register")
        entries, _ = ledger.list_events()
        newest_first = list(entries)
        for newer, older in zip(newest_first, newest_first[1:]):
            assert newer.prev_hash == older.block_hash
        assert newest_first[-1].prev_hash == "0"
