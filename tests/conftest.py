"""
Shared fixtures for the blocklog test suite.
"""

import itertools
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from blocklog.core import AppendCoordinator, AuditLedger, RepairJournal, RetryPolicy, Signer
from blocklog.core.hasher import HashEngine
from blocklog.core.signing_service import SigningService
from blocklog.db.store import InMemoryLedgerStore, LedgerStore, SqliteLedgerStore
from blocklog.observability import get_metrics
from blocklog.schemas import EntryDraft


class TickingClock:
    """Deterministic timestamps, one microsecond apart."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self._ticks = itertools.count()
        self._start = start

    def __call__(self) -> str:
        return HashEngine.format_timestamp(
            self._start + timedelta(microseconds=next(self._ticks))
        )


def no_sleep(seconds: float) -> None:
    pass


class DelegatingStore(LedgerStore):
    """Passes everything through to an inner store. Subclasses inject misbehaviour."""

    def __init__(self, inner: LedgerStore):
        self.inner = inner

    def append(self, draft):
        return self.inner.append(draft)

    def read_last(self):
        return self.inner.read_last()

    def read_by_id(self, sequence_id):
        return self.inner.read_by_id(sequence_id)

    def read_range(self, offset=0, limit=50, filters=None, order="desc"):
        return self.inner.read_range(offset, limit, filters, order)

    def read_after(self, after_id, limit, until_id=None):
        return self.inner.read_after(after_id, limit, until_id)

    def count(self):
        return self.inner.count()

    def overwrite_hash_fields(self, sequence_id, new_prev_hash, new_block_hash):
        return self.inner.overwrite_hash_fields(sequence_id, new_prev_hash, new_block_hash)

    def retract(self, sequence_id, block_hash):
        return self.inner.retract(sequence_id, block_hash)


def competitor_draft(prev_hash: str, label: str) -> EntryDraft:
    """An entry written by another process that read the same head."""
    timestamp = "2024-06-01T00:00:00.000000Z"
    return EntryDraft(
        prev_hash=prev_hash,
        block_hash=HashEngine.compute(prev_hash, "user_login", label, None, None, None, timestamp),
        action="user_login",
        actor_name=label,
        timestamp=timestamp,
    )


def tamper_details(store, sequence_id: int, details: str) -> None:
    """Change an entry's content behind the ledger's back."""
    if isinstance(store, SqliteLedgerStore):
        with sqlite3.connect(str(store.db_path)) as conn:
            conn.execute(
                "UPDATE ledger_entries SET details = ? WHERE sequence_id = ?",
                (details, sequence_id),
            )
    else:
        entry = store._entries[sequence_id]
        store._entries[sequence_id] = entry.model_copy(update={"details": details})


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def journal_keys(monkeypatch):
    """A configured journal keypair; the signing singleton is rebuilt around the test."""
    private_key, public_key = Signer.generate_keypair()
    monkeypatch.setenv("BLOCKLOG_JOURNAL_PRIVATE_KEY", private_key)
    monkeypatch.setenv("BLOCKLOG_JOURNAL_PUBLIC_KEY", public_key)
    SigningService.reset()
    yield private_key, public_key
    SigningService.reset()


@pytest.fixture
def journal(tmp_path, journal_keys):
    return RepairJournal(tmp_path / "repair-journal.jsonl")


@pytest.fixture
def memory_store():
    return InMemoryLedgerStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteLedgerStore(tmp_path / "ledger.db")


@pytest.fixture
def make_ledger(journal):
    """Build an AuditLedger over a given store with a deterministic clock."""
    def _make(store, **coordinator_kwargs):
        coordinator_kwargs.setdefault("clock", TickingClock())
        coordinator_kwargs.setdefault("sleep", no_sleep)
        coordinator_kwargs.setdefault("policy", RetryPolicy())
        coordinator = AppendCoordinator(store, **coordinator_kwargs)
        return AuditLedger(store, coordinator=coordinator, journal=journal, page_size=2)
    return _make


@pytest.fixture
def ledger(make_ledger, memory_store):
    return make_ledger(memory_store)
