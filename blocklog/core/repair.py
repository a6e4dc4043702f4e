"""
Chain Repair Tool

Restores chain continuity after an out-of-band corruption by recomputing
prev_hash/block_hash from a trusted anchor onward.

ALGORITHM:
    anchor = entry(start_id - 1)          # trusted by the operator
    running_prev = anchor.block_hash
    for entry in start_id .. tail:
        new_hash = Hash(running_prev, entry's stored content fields)
        if entry.prev_hash != running_prev or entry.block_hash != new_hash:
            record change
        running_prev = new_hash

Content fields (action, actor, target, details, timestamp) are NEVER
changed. Repair re-seals the chain over whatever content is stored; it does
not restore tampered content. That is why every applied repair is written
to the signed Repair Journal: the journal is the evidence that hashes were
rewritten, by whom, and from what.

MODES:
- dry_run=True (default): compute and report, touch nothing
- dry_run=False: journal, then apply one entry at a time in ascending
  order. A crash leaves a valid repaired prefix and an unrepaired suffix;
  rerunning from the same anchor finishes the job.

LIMITATIONS:
- One contiguous range from one known-good anchor per run
- The genesis entry cannot be repaired (there is no anchor before it)
- Writers should be quiesced while applying: entries appended after the
  plan was computed link to the pre-repair tail hash
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from ..db.store import LedgerStore, StoreError
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import LedgerEntry
from .errors import RepairAbortedError, RepairPreconditionError
from .hasher import HashEngine
from .journal import JournalError, JournalKind, RepairJournal
from .verifier import get_scan_page_size

logger = get_logger(__name__)


@dataclass(frozen=True)
class BlockChange:
    """One entry whose hash fields differ from the recomputed chain."""
    id: int
    old_prev_hash: str
    new_prev_hash: str
    old_hash: str
    new_hash: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RepairReport:
    """
    Outcome of one repair run.

    applied is True once an apply run has written every change and
    journaled its completion. It stays False for a dry run and for a chain
    that needed no changes. applied_count is the number of changes written.
    journal_record is the seq of the repair_completed journal record.
    """
    start_id: int
    dry_run: bool
    blocks_examined: int = 0
    blocks_changed: list[BlockChange] = field(default_factory=list)
    applied: bool = False
    applied_count: int = 0
    anchor_verified: bool = True
    journal_record: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_id": self.start_id,
            "dry_run": self.dry_run,
            "blocks_examined": self.blocks_examined,
            "blocks_changed": [c.to_dict() for c in self.blocks_changed],
            "applied": self.applied,
            "applied_count": self.applied_count,
            "anchor_verified": self.anchor_verified,
            "journal_record": self.journal_record,
        }


class ChainRepairTool:
    """Recompute and (optionally) rewrite hash fields from an anchor."""

    def __init__(
        self,
        store: LedgerStore,
        journal: Optional[RepairJournal] = None,
        page_size: Optional[int] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._journal = journal
        self._page_size = page_size or get_scan_page_size()
        self._metrics = metrics or get_metrics()

    def repair(
        self,
        start_id: int,
        dry_run: bool = True,
        operator: Optional[str] = None,
    ) -> RepairReport:
        """
        Plan (and unless dry_run, apply) a repair from start_id to the tail.

        Raises:
            RepairPreconditionError: start_id <= 1, anchor missing, or an
                apply run without a journal
            RepairAbortedError: A store or journal write failed part way
                through an apply run
        """
        if start_id <= 1:
            raise RepairPreconditionError(
                f"start_id must be > 1 (the genesis entry cannot be repaired), got {start_id}"
            )
        if not dry_run and self._journal is None:
            raise RepairPreconditionError(
                "Applying a repair requires a repair journal"
            )

        anchor = self._store.read_by_id(start_id - 1)
        if anchor is None:
            raise RepairPreconditionError(
                f"Anchor entry {start_id - 1} not found"
            )

        report = RepairReport(start_id=start_id, dry_run=dry_run)
        report.anchor_verified = self._check_anchor(anchor)

        last_examined = self._plan(anchor, report)

        logger.info(
            "Repair planned",
            start_id=start_id,
            dry_run=dry_run,
            blocks_examined=report.blocks_examined,
            blocks_changed=len(report.blocks_changed),
        )

        if dry_run or not report.blocks_changed:
            return report

        self._apply(anchor, report, operator)
        self._warn_if_tail_moved(last_examined)
        return report

    # ================================================================
    # PLAN
    # ================================================================

    def _check_anchor(self, anchor: LedgerEntry) -> bool:
        recomputed = HashEngine.compute_for(anchor)
        if HashEngine.matches(recomputed, anchor.block_hash):
            return True
        logger.warning(
            "Anchor entry does not verify; proceeding because the anchor is trusted",
            anchor_id=anchor.sequence_id,
        )
        return False

    def _plan(self, anchor: LedgerEntry, report: RepairReport) -> int:
        """Walk start_id..tail and fill report.blocks_changed. Returns last id seen."""
        running_prev = anchor.block_hash
        after = anchor.sequence_id

        while True:
            page = self._store.read_after(after, self._page_size)
            if not page:
                break
            for entry in page:
                report.blocks_examined += 1
                new_hash = HashEngine.compute_for(entry, prev_hash=running_prev)
                if entry.prev_hash != running_prev or entry.block_hash != new_hash:
                    report.blocks_changed.append(BlockChange(
                        id=entry.sequence_id,
                        old_prev_hash=entry.prev_hash,
                        new_prev_hash=running_prev,
                        old_hash=entry.block_hash,
                        new_hash=new_hash,
                    ))
                running_prev = new_hash
                after = entry.sequence_id

        return after

    # ================================================================
    # APPLY
    # ================================================================

    def _apply(self, anchor: LedgerEntry, report: RepairReport, operator: Optional[str]) -> None:
        journal = self._journal

        try:
            journal.append(JournalKind.REPAIR_STARTED, {
                "start_id": report.start_id,
                "anchor_id": anchor.sequence_id,
                "anchor_hash": anchor.block_hash,
                "anchor_verified": report.anchor_verified,
                "operator": operator,
                "planned_changes": len(report.blocks_changed),
            })
        except JournalError as e:
            raise self._aborted(report, report.blocks_changed[0].id, e) from e

        for change in report.blocks_changed:
            # Journal first: an applied change is never missing from the journal
            try:
                journal.append(JournalKind.BLOCK_REPAIRED, {
                    "start_id": report.start_id,
                    "operator": operator,
                    **change.to_dict(),
                })
            except JournalError as e:
                raise self._aborted(report, change.id, e) from e

            try:
                self._store.overwrite_hash_fields(
                    change.id, change.new_prev_hash, change.new_hash
                )
            except Exception as e:
                self._journal_failure(report, change.id, e)
                if isinstance(e, StoreError):
                    raise self._aborted(report, change.id, e) from e
                raise
            report.applied_count += 1

        try:
            completed = journal.append(JournalKind.REPAIR_COMPLETED, {
                "start_id": report.start_id,
                "operator": operator,
                "applied_count": report.applied_count,
            })
        except JournalError as e:
            raise self._aborted(report, None, e) from e
        report.journal_record = completed.seq
        report.applied = True

        self._metrics.record_repair(report.applied_count)
        logger.warning(
            "Repair applied",
            start_id=report.start_id,
            applied_count=report.applied_count,
            operator=operator,
        )

    def _journal_failure(self, report: RepairReport, failed_id: int, error: Exception) -> None:
        try:
            self._journal.append(JournalKind.REPAIR_FAILED, {
                "start_id": report.start_id,
                "failed_id": failed_id,
                "applied_count": report.applied_count,
                "error": str(error),
            })
        except JournalError as e:
            logger.error(
                "Could not journal the repair failure",
                start_id=report.start_id,
                failed_id=failed_id,
                error=str(e),
            )

    @staticmethod
    def _aborted(
        report: RepairReport,
        failed_id: Optional[int],
        error: Exception,
    ) -> RepairAbortedError:
        if failed_id is None:
            message = (
                f"All {report.applied_count} change(s) from entry {report.start_id} were "
                f"written, but the completion record could not be journaled: {error}"
            )
        else:
            message = (
                f"Repair from entry {report.start_id} stopped at entry {failed_id} after "
                f"{report.applied_count} change(s): {error}. Rerun from the same anchor to finish."
            )
        logger.error(
            "Repair aborted",
            start_id=report.start_id,
            failed_id=failed_id,
            applied_count=report.applied_count,
            error=str(error),
        )
        return RepairAbortedError(message, failed_id=failed_id, applied_count=report.applied_count)

    def _warn_if_tail_moved(self, last_examined: int) -> None:
        tail = self._store.read_last()
        if tail is not None and tail.sequence_id > last_examined:
            logger.warning(
                "Entries were appended during repair; verify and rerun from rerun_from_id",
                last_examined=last_examined,
                rerun_from_id=last_examined + 1,
            )
