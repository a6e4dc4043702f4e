"""
Append Coordinator

The only code path that adds entries to the ledger.

Each attempt runs:

    FetchLast -> ComputeHash -> Write -> VerifyLink -> Done
                                             |
                                             +-> RaceDetected -> retract -> retry

- FetchLast:   read the tail (empty ledger -> prev_hash "0")
- ComputeHash: Hash Engine over prev_hash, event fields, fresh timestamp
- Write:       one atomic store.append() of the fully formed entry
- VerifyLink:  re-read entry sequence_id - 1 and confirm its block_hash is
               the prev_hash we used. If not, another writer got in between
               our FetchLast and our Write.

Two writers that read the same tail hash against the same prev_hash. The
store keeps prev_hash unique, so the second Write fails with
StoreConflictError and nothing is written: that is a race, retried from
FetchLast after a jittered backoff.

VerifyLink is still the check of record. A store without the prev_hash
unique index (unique_prev_hash is False) lets both writes land, and then
VerifyLink catches the loser, which withdraws its own entry (only while it
is still the tail) and tries again.

If the loser's entry has already been built upon, it cannot be withdrawn
without breaking the chain further. The entry stays (the event IS
recorded), an ERROR names the id to repair from, and ChainForkError tells
the caller not to record the event again.
"""

import os
import random
import time
from contextlib import nullcontext
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from ..db.store import LedgerStore, StoreConflictError, StoreError, TransientStoreError
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import GENESIS_PREV_HASH, EntryDraft, LedgerEntry
from .errors import AppendError, ChainForkError, RaceDetected
from .hasher import HashEngine

logger = get_logger(__name__)


@dataclass
class RetryPolicy:
    """
    Retry policy for races and transient store failures.

    Linear backoff: the wait after attempt n is base_delay_ms * n, scaled by
    a random factor in [1 - jitter, 1 + jitter]. Writers that lost the same
    race would otherwise wake together and collide again.
    """
    max_attempts: int = 5
    base_delay_ms: int = 25
    jitter: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.environ.get("BLOCKLOG_APPEND_MAX_ATTEMPTS", "5")),
            base_delay_ms=int(os.environ.get("BLOCKLOG_APPEND_BASE_DELAY_MS", "25")),
            jitter=float(os.environ.get("BLOCKLOG_APPEND_JITTER", "1.0")),
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = self.base_delay_ms * attempt / 1000.0
        if self.jitter:
            delay *= random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return delay


@dataclass(frozen=True)
class ChainHead:
    """
    The tail of the chain as observed by one attempt.

    sequence_id is 0 and block_hash is "0" for an empty ledger.
    """
    sequence_id: int
    block_hash: str

    @classmethod
    def from_entry(cls, entry: Optional[LedgerEntry]) -> "ChainHead":
        if entry is None:
            return cls(sequence_id=0, block_hash=GENESIS_PREV_HASH)
        return cls(sequence_id=entry.sequence_id, block_hash=entry.block_hash)

    @property
    def is_empty(self) -> bool:
        return self.sequence_id == 0


class AppendCoordinator:
    """
    Fetch-hash-write-verify append with retry on race.

    One coordinator is shared by every request handler in a process.
    serialize_local=True makes handlers in this process take turns through
    FetchLast -> Write, so they never race each other. Other processes
    (other workers, the CLI) can still race us; the store's prev_hash
    uniqueness turns that into a retry, and VerifyLink catches it where
    the store cannot enforce uniqueness.
    """

    def __init__(
        self,
        store: LedgerStore,
        policy: Optional[RetryPolicy] = None,
        serialize_local: bool = True,
        clock: Callable[[], str] = HashEngine.utc_now_timestamp,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            store: Where entries are written
            policy: Retry policy (or loads from environment)
            serialize_local: Hold a process-local lock across FetchLast -> Write
            clock: Returns the canonical timestamp for a new entry
            sleep: Backoff sleeper (tests pass a no-op)
            metrics: Metrics sink (defaults to the global collector)
        """
        self._store = store
        self._policy = policy or RetryPolicy.from_env()
        self._lock = Lock() if serialize_local else None
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics or get_metrics()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ================================================================
    # PUBLIC
    # ================================================================

    def append(
        self,
        action: str,
        actor_name: Optional[str] = None,
        target_type: Optional[str] = None,
        target_name: Optional[str] = None,
        details_json: Optional[str] = None,
    ) -> int:
        """
        Append one entry and return its sequence_id.

        Raises:
            AppendError: Retries exhausted (races or transient failures)
            ChainForkError: Our entry was written but could not be withdrawn
        """
        start = time.perf_counter()
        last_error: Optional[Exception] = None
        attempts = self._policy.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                sequence_id = self._attempt(
                    action, actor_name, target_type, target_name, details_json
                )
            except RaceDetected as e:
                last_error = e
                self._metrics.record_race()
                logger.warning(
                    "Append race detected",
                    attempt=attempt,
                    sequence_id=e.sequence_id,
                    action=action,
                )
            except TransientStoreError as e:
                last_error = e
                logger.warning(
                    "Transient store failure during append",
                    attempt=attempt,
                    action=action,
                    error=str(e),
                )
            else:
                latency_ms = (time.perf_counter() - start) * 1000
                self._metrics.record_append(latency_ms)
                logger.debug(
                    "Entry appended",
                    sequence_id=sequence_id,
                    action=action,
                    attempts=attempt,
                )
                return sequence_id

            if attempt < attempts:
                self._metrics.record_retry()
                self._sleep(self._policy.delay_for(attempt))

        self._metrics.record_append_failure()
        logger.error(
            "Append failed after retries",
            attempts=attempts,
            action=action,
            error=str(last_error),
        )
        raise AppendError(
            f"Append failed after {attempts} attempts: {last_error}",
            attempts=attempts,
        ) from last_error

    # ================================================================
    # ONE ATTEMPT
    # ================================================================

    def _attempt(
        self,
        action: str,
        actor_name: Optional[str],
        target_type: Optional[str],
        target_name: Optional[str],
        details_json: Optional[str],
    ) -> int:
        # Nothing but store calls and hashing inside this window
        with self._lock if self._lock is not None else nullcontext():
            head = ChainHead.from_entry(self._store.read_last())
            timestamp = self._clock()
            block_hash = HashEngine.compute(
                head.block_hash,
                action,
                actor_name,
                target_type,
                target_name,
                details_json,
                timestamp,
            )
            draft = EntryDraft(
                prev_hash=head.block_hash,
                block_hash=block_hash,
                action=action,
                actor_name=actor_name,
                target_type=target_type,
                target_name=target_name,
                details=details_json,
                timestamp=timestamp,
            )
            try:
                sequence_id = self._store.append(draft)
            except StoreConflictError as e:
                # Another writer took the id or extended this head first; nothing written
                raise RaceDetected(f"Append conflict: {e}") from e

        self._verify_link(sequence_id, head, draft)
        return sequence_id

    def _verify_link(self, sequence_id: int, head: ChainHead, draft: EntryDraft) -> None:
        """Confirm the entry before ours is the head we hashed against."""
        if sequence_id == 1:
            if draft.prev_hash == GENESIS_PREV_HASH:
                return
        else:
            previous = self._read_with_retry(sequence_id - 1)
            if previous is not None and previous.block_hash == draft.prev_hash:
                return

        logger.info(
            "Link check failed, withdrawing entry",
            sequence_id=sequence_id,
            expected_head_id=head.sequence_id,
        )

        try:
            withdrawn = self._store.retract(sequence_id, draft.block_hash)
        except StoreError as e:
            withdrawn = False
            logger.error(
                "Could not withdraw raced entry",
                sequence_id=sequence_id,
                error=str(e),
            )

        if withdrawn:
            raise RaceDetected(
                f"Entry {sequence_id} was not linked to head {head.sequence_id}",
                sequence_id=sequence_id,
            )

        self._metrics.record_fork()
        logger.error(
            "Chain fork: raced entry is no longer the tail and stays in the ledger. "
            "Run repair starting at repair_from_id.",
            sequence_id=sequence_id,
            repair_from_id=sequence_id,
            action=draft.action,
        )
        raise ChainForkError(
            f"Entry {sequence_id} is recorded but not linked to its predecessor; "
            f"repair the chain from {sequence_id}",
            sequence_id=sequence_id,
            repair_from_id=sequence_id,
        )

    def _read_with_retry(self, sequence_id: int) -> Optional[LedgerEntry]:
        """
        Read for VerifyLink. Our entry is already written, so a transient
        failure here must not send us back to FetchLast (that would record
        the event twice).
        """
        attempts = self._policy.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._store.read_by_id(sequence_id)
            except TransientStoreError as e:
                if attempt == attempts:
                    logger.error(
                        "Link check read failed; entry is written but unverified",
                        sequence_id=sequence_id + 1,
                        error=str(e),
                    )
                    raise AppendError(
                        f"Entry {sequence_id + 1} was written but its link could not "
                        f"be verified: {e}. Run chain verification before retrying.",
                        attempts=attempt,
                    ) from e
                self._sleep(self._policy.delay_for(attempt))
        return None
