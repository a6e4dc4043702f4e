"""
Audit Ledger - The Front Door

This is an append-only, hash-chained audit ledger.
Nothing is "edited". Things happen, and each thing becomes one entry.

The ledger:
- Accepts structured events from Event Producers
- Canonicalizes their details
- Appends them through the Append Coordinator (the only write path)
- Lists them for display
- Verifies and, on operator request, repairs the chain

ARCHITECTURE:
- AuditLedger: validation, canonicalization, wiring
- AppendCoordinator: fetch-hash-write-verify with retry on race
- LedgerStore: atomic append, ordering, durability
- ChainVerifier / ChainRepairTool: operator-facing integrity tools
"""

from typing import Any, Mapping, Optional

from ..db.store import LedgerStore
from ..schemas import AuditEvent, EntryFilter, LedgerEntry, normalize_action
from .coordinator import AppendCoordinator, RetryPolicy
from .hasher import HashEngine
from .journal import RepairJournal
from .repair import ChainRepairTool, RepairReport
from .verifier import ChainVerifier, VerificationReport


DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 100


def clamp_limit(limit: Optional[int]) -> int:
    """Clamp a requested page size to [1, MAX_LIST_LIMIT]; falsy -> default."""
    if not limit:
        return DEFAULT_LIST_LIMIT
    return max(1, min(int(limit), MAX_LIST_LIMIT))


class AuditLedger:
    """
    The ledger service.

    Usage:
        ledger = AuditLedger(InMemoryLedgerStore())
        ledger.record_event("domain_register", actor_name="alice",
                            target_type="domain", target_name="alice.example",
                            details={"amount": 10})
    """

    def __init__(
        self,
        store: LedgerStore,
        coordinator: Optional[AppendCoordinator] = None,
        journal: Optional[RepairJournal] = None,
        retry_policy: Optional[RetryPolicy] = None,
        page_size: Optional[int] = None,
    ):
        self._store = store
        self._coordinator = coordinator or AppendCoordinator(store, policy=retry_policy)
        self._verifier = ChainVerifier(store, page_size=page_size)
        self._repair_tool = ChainRepairTool(store, journal=journal, page_size=page_size)
        self._journal = journal

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def journal(self) -> Optional[RepairJournal]:
        return self._journal

    @property
    def verifier(self) -> ChainVerifier:
        return self._verifier

    # ================================================================
    # WRITE
    # ================================================================

    def record_event(
        self,
        action: str,
        actor_name: Optional[str] = None,
        target_type: Optional[str] = None,
        target_name: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Record one event and return its sequence_id.

        The event is durable once this returns. If it raises AppendError,
        the event was NOT recorded and the business operation that produced
        it must not be treated as complete.

        Raises:
            ValueError: action is not a valid tag
            CanonicalSerializationError: details cannot be canonicalized
            AppendError: retries exhausted
            ChainForkError: recorded, but the chain needs repair
        """
        tag = normalize_action(action)
        details_json = HashEngine.canonical_details(details)
        return self._coordinator.append(
            tag,
            actor_name=actor_name,
            target_type=target_type,
            target_name=target_name,
            details_json=details_json,
        )

    def record(self, event: AuditEvent) -> int:
        """Record a validated AuditEvent."""
        return self.record_event(
            event.action,
            actor_name=event.actor_name,
            target_type=event.target_type,
            target_name=event.target_name,
            details=event.details,
        )

    # ================================================================
    # READ
    # ================================================================

    def list_events(
        self,
        filters: Optional[EntryFilter] = None,
        limit: Optional[int] = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> tuple[list[LedgerEntry], int]:
        """
        Newest-first page of entries.

        Returns:
            (entries, total) where total counts every entry matching filters
        """
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        return self._store.read_range(
            offset=offset,
            limit=clamp_limit(limit),
            filters=filters,
            order="desc",
        )

    def get_entry(self, sequence_id: int) -> Optional[LedgerEntry]:
        return self._store.read_by_id(sequence_id)

    def head(self) -> Optional[LedgerEntry]:
        """The last entry, or None for an empty ledger."""
        return self._store.read_last()

    @property
    def entry_count(self) -> int:
        return self._store.count()

    # ================================================================
    # INTEGRITY
    # ================================================================

    def verify_chain(
        self,
        start_id: Optional[int] = None,
        expected_prev_hash: Optional[str] = None,
        end_id: Optional[int] = None,
    ) -> VerificationReport:
        return self._verifier.verify(
            start_id=start_id,
            expected_prev_hash=expected_prev_hash,
            end_id=end_id,
        )

    def repair_chain(
        self,
        start_id: int,
        dry_run: bool = True,
        operator: Optional[str] = None,
    ) -> RepairReport:
        return self._repair_tool.repair(start_id, dry_run=dry_run, operator=operator)
