"""
Chain Verifier

Walks the ledger in ascending sequence_id order and checks, for each entry:

1. Link:  entry.prev_hash == block_hash of the entry before it ("0" for genesis)
2. Hash:  recomputing the Hash Engine over the stored fields gives block_hash

The walk stops at the first failure. Everything after a broken entry is
unverifiable anyway: its prev_hash points at a hash nobody can reproduce.

CONSISTENT READ:
The tail is fixed when the walk starts. Entries appended while the walk is
paging through the store are outside the boundary and do not change the
result. Pages are keyset reads (sequence_id > last seen), so concurrent
appends never shift a page.

Read-only. Never writes.
"""

import os
from dataclasses import asdict, dataclass
from typing import Any, Optional

from ..db.store import LedgerStore
from ..observability import get_logger
from ..schemas import GENESIS_PREV_HASH
from .errors import ChainInvariantViolation
from .hasher import HashEngine

logger = get_logger(__name__)


# Violation kinds
PREV_HASH_MISMATCH = "prev_hash_mismatch"
BLOCK_HASH_MISMATCH = "block_hash_mismatch"

DEFAULT_PAGE_SIZE = 500


def get_scan_page_size() -> int:
    return int(os.environ.get("BLOCKLOG_SCAN_PAGE_SIZE", str(DEFAULT_PAGE_SIZE)))


@dataclass(frozen=True)
class VerificationReport:
    """
    Result of one verification walk.

    total_checked counts every entry inspected, including the failing one.
    expected/actual carry the mismatching values for the first failure.
    head_id and head_hash name the last entry inside the walk's boundary,
    so they describe exactly the chain that was checked.
    """
    valid: bool
    total_checked: int
    first_invalid_id: Optional[int] = None
    violation: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    head_id: Optional[int] = None
    head_hash: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ChainVerifier:
    """Verifies chain integrity against a LedgerStore."""

    def __init__(self, store: LedgerStore, page_size: Optional[int] = None):
        self._store = store
        self._page_size = page_size or get_scan_page_size()
        if self._page_size < 1:
            raise ValueError("page_size must be >= 1")

    def verify(
        self,
        start_id: Optional[int] = None,
        expected_prev_hash: Optional[str] = None,
        end_id: Optional[int] = None,
    ) -> VerificationReport:
        """
        Verify the chain, or the segment [start_id, end_id].

        Args:
            start_id: First entry to check (default: the first entry)
            expected_prev_hash: Trusted prev_hash for start_id. Defaults to
                the stored block_hash of entry start_id - 1 ("0" for id 1).
            end_id: Last entry to check (default: the tail at walk start)

        Raises:
            ValueError: start_id < 1, or start_id - 1 is missing and no
                expected_prev_hash was given
        """
        head = self._store.read_last()
        boundary = head.sequence_id if head is not None else 0
        if end_id is not None and end_id < boundary:
            boundary = end_id
            head = self._store.read_by_id(end_id) if end_id >= 1 else None
        head_hash = head.block_hash if head is not None else None

        first_id = 1 if start_id is None else start_id
        if first_id < 1:
            raise ValueError(f"start_id must be >= 1, got {first_id}")

        expected = expected_prev_hash
        if expected is None:
            expected = self._anchor_hash(first_id)

        checked = 0
        after = first_id - 1
        while after < boundary:
            page = self._store.read_after(after, self._page_size, until_id=boundary)
            if not page:
                break

            for entry in page:
                checked += 1

                if entry.prev_hash != expected:
                    return self._failure(
                        checked, entry.sequence_id, PREV_HASH_MISMATCH,
                        expected, entry.prev_hash, boundary, head_hash,
                    )

                recomputed = HashEngine.compute_for(entry)
                if not HashEngine.matches(recomputed, entry.block_hash):
                    return self._failure(
                        checked, entry.sequence_id, BLOCK_HASH_MISMATCH,
                        recomputed, entry.block_hash, boundary, head_hash,
                    )

                expected = entry.block_hash
                after = entry.sequence_id

        logger.debug("Chain verified", total_checked=checked, head_id=boundary or None)
        return VerificationReport(
            valid=True,
            total_checked=checked,
            head_id=boundary or None,
            head_hash=head_hash,
        )

    def ensure_valid(self, **kwargs: Any) -> VerificationReport:
        """
        Verify and raise on the first violation.

        Raises:
            ChainInvariantViolation: The chain (or segment) is broken
        """
        report = self.verify(**kwargs)
        if not report.valid:
            raise ChainInvariantViolation(
                f"Chain broken at entry {report.first_invalid_id}: {report.violation}",
                sequence_id=report.first_invalid_id,
                violation=report.violation,
            )
        return report

    def _anchor_hash(self, start_id: int) -> str:
        if start_id == 1:
            return GENESIS_PREV_HASH
        anchor = self._store.read_by_id(start_id - 1)
        if anchor is None:
            raise ValueError(
                f"Entry {start_id - 1} not found; pass expected_prev_hash "
                f"to verify from {start_id}"
            )
        return anchor.block_hash

    @staticmethod
    def _failure(
        checked: int,
        sequence_id: int,
        violation: str,
        expected: str,
        actual: str,
        boundary: int,
        head_hash: Optional[str],
    ) -> VerificationReport:
        logger.warning(
            "Chain verification failed",
            first_invalid_id=sequence_id,
            violation=violation,
            total_checked=checked,
        )
        return VerificationReport(
            valid=False,
            total_checked=checked,
            first_invalid_id=sequence_id,
            violation=violation,
            expected=expected,
            actual=actual,
            head_id=boundary or None,
            head_hash=head_hash,
        )
