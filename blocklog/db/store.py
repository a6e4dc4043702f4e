"""
Ledger Store Abstraction

This module defines the LedgerStore interface and three implementations:
- InMemoryLedgerStore: For development and testing
- SqliteLedgerStore: Single-file deployments and local tooling
- PostgresLedgerStore: Production, shared by many request handlers

The LedgerStore is responsible for:
- Atomic append with sequence_id assignment
- Ordering and durability guarantees
- Reads for the Append Coordinator, the Chain Verifier and list views

The ledger components retain responsibility for:
- Hashing (the store never computes or checks a hash)
- Race detection (Append Coordinator's VerifyLink step)
- Chain verification and repair

APPEND CONTRACT:
    sequence_id = store.append(draft)

- The id is max(sequence_id) + 1, assigned inside the same atomic write
  that makes the row visible. A reader never sees a reserved id without
  its row.
- Two writers that race for the same id, or write the same block_hash,
  get StoreConflictError for the loser. Nothing is written for the loser.
- prev_hash is unique: an entry has at most one successor. Two writers
  that read the same tail both hash against it, and the second one to
  commit gets StoreConflictError. Whether prev_hash is the tail's
  block_hash is NOT checked here; that is the coordinator's VerifyLink.
- A table that already holds a fork cannot take the unique index. The
  store then opens without it (unique_prev_hash is False) and logs a
  warning until the fork is repaired.

PRIVILEGED WRITES:
- overwrite_hash_fields(): Chain Repair Tool only
- retract(): Append Coordinator only, for its own just-written raced entry
"""

import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Generator, Iterable, Optional

import psycopg2

from ..observability import get_logger
from ..schemas import EntryDraft, EntryFilter, LedgerEntry, SortOrder

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for ledger store errors."""
    pass


class TransientStoreError(StoreError):
    """
    Raised when a read/write failed for an infrastructure reason.

    Retried by the Append Coordinator; surfaced only after retries run out.
    """
    pass


class StoreConflictError(StoreError):
    """Raised when an append collides with a concurrent append (id or hash)."""
    pass


class EntryNotFoundError(StoreError):
    """Raised when a privileged write targets a missing entry."""
    pass


# ============================================================
# SCHEMA
# ============================================================

# details is TEXT, never JSON/JSONB: the column must return the exact
# bytes that were hashed. JSONB would reorder keys and drop whitespace.
LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS ledger_entries (
    sequence_id  BIGINT PRIMARY KEY,
    block_hash   TEXT NOT NULL UNIQUE,
    prev_hash    TEXT NOT NULL,
    action       TEXT NOT NULL,
    actor_name   TEXT,
    target_type  TEXT,
    target_name  TEXT,
    details      TEXT,
    "timestamp"  TEXT NOT NULL,
    created_at   TEXT NOT NULL
)
"""

LEDGER_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_ledger_entries_action ON ledger_entries(action)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_entries_actor ON ledger_entries(actor_name)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_entries_target ON ledger_entries(target_type)",
    'CREATE INDEX IF NOT EXISTS idx_ledger_entries_timestamp ON ledger_entries("timestamp")',
)

# Kept out of LEDGER_INDEXES: it fails on a table that already holds a
# fork, and that table must still open so it can be repaired.
LEDGER_LINK_INDEX = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_entries_prev_hash "
    "ON ledger_entries(prev_hash)"
)


def _log_missing_link_index(error: Exception) -> None:
    logger.warning(
        "Ledger already holds two entries with the same prev_hash; "
        "opening without the prev_hash unique index. Verify and repair the chain.",
        error=str(error),
    )

_COLUMNS = (
    'sequence_id, block_hash, prev_hash, action, actor_name, '
    'target_type, target_name, details, "timestamp", created_at'
)

_FILTER_COLUMNS = ("action", "actor_name", "target_type")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _check_order(order: str) -> str:
    if order not in ("asc", "desc"):
        raise ValueError(f"order must be 'asc' or 'desc', got {order!r}")
    return order


def _build_where(filters: Optional[EntryFilter], placeholder: str) -> tuple[str, list[Any]]:
    """Build a WHERE clause from equality filters."""
    clauses = ["1=1"]
    params: list[Any] = []
    if filters is not None:
        for column in _FILTER_COLUMNS:
            value = getattr(filters, column)
            if value is not None:
                clauses.append(f"{column} = {placeholder}")
                params.append(value)
    return " AND ".join(clauses), params


def _row_to_entry(row: tuple) -> LedgerEntry:
    """Convert a database row (in _COLUMNS order) to a LedgerEntry."""
    created_at = row[9]
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    return LedgerEntry(
        sequence_id=row[0],
        block_hash=row[1],
        prev_hash=row[2],
        action=row[3],
        actor_name=row[4],
        target_type=row[5],
        target_name=row[6],
        details=row[7],
        timestamp=row[8],
        created_at=created_at,
    )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger storage.

    The LedgerStore is the single source of truth for:
    - Sequence ids (strictly increasing, assigned at write time)
    - Entry persistence and ordering

    Implementations must ensure:
    1. append() is atomic: id assignment and row visibility happen together
    2. No duplicate sequence ids, block_hash values or prev_hash values
    3. Conflicts surface as StoreConflictError, infrastructure failures
       as TransientStoreError

    unique_prev_hash is False when the backend cannot enforce (2) for
    prev_hash. VerifyLink then is the only race check.
    """

    unique_prev_hash: bool = True

    @abstractmethod
    def append(self, draft: EntryDraft) -> int:
        """
        Persist a fully hashed entry and assign its sequence_id.

        Returns:
            The assigned sequence_id

        Raises:
            StoreConflictError: Lost a race for the id, or duplicate
                block_hash or prev_hash
            TransientStoreError: Infrastructure failure, nothing was written
        """
        pass

    @abstractmethod
    def read_last(self) -> Optional[LedgerEntry]:
        """Return the entry with the highest sequence_id, or None if empty."""
        pass

    @abstractmethod
    def read_by_id(self, sequence_id: int) -> Optional[LedgerEntry]:
        """Return a single entry, or None."""
        pass

    @abstractmethod
    def read_range(
        self,
        offset: int = 0,
        limit: int = 50,
        filters: Optional[EntryFilter] = None,
        order: SortOrder = "desc",
    ) -> tuple[list[LedgerEntry], int]:
        """
        Page through entries.

        Args:
            offset: Rows to skip
            limit: Max rows to return
            filters: Equality filters on action / actor_name / target_type
            order: "desc" for display (newest first), "asc" for verification

        Returns:
            (entries, total_count) where total_count ignores offset/limit
        """
        pass

    @abstractmethod
    def read_after(
        self,
        after_id: int,
        limit: int,
        until_id: Optional[int] = None,
    ) -> list[LedgerEntry]:
        """
        Keyset page in ascending order: after_id < sequence_id <= until_id.

        Used by the verifier and the repair tool to walk a bounded range
        without offsets shifting under concurrent appends.
        """
        pass

    @abstractmethod
    def count(self) -> int:
        """Total number of entries."""
        pass

    @abstractmethod
    def overwrite_hash_fields(
        self,
        sequence_id: int,
        new_prev_hash: str,
        new_block_hash: str,
    ) -> None:
        """
        PRIVILEGED: rewrite the hash fields of one entry in place.

        Only the Chain Repair Tool calls this, and only after journaling
        the change. Content fields are never touched.

        Raises:
            EntryNotFoundError: No entry with this id
            StoreConflictError: new_block_hash or new_prev_hash already used
                by another entry
        """
        pass

    @abstractmethod
    def retract(self, sequence_id: int, block_hash: str) -> bool:
        """
        PRIVILEGED: withdraw a just-written entry that lost a race.

        Deletes the entry only if it is still the tail AND still carries
        block_hash. Returns False (and deletes nothing) otherwise.
        """
        pass

    def close(self) -> None:
        """Release resources held by the store."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Each operation is atomic (guarded by a lock), but no lock spans
    operations: two appends can still both read the same tail before
    either writes, exactly like two request handlers against a database.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-process deployments (no shared state)
    """

    def __init__(self, unique_prev_hash: bool = True):
        """
        Args:
            unique_prev_hash: Reject a second entry on the same prev_hash.
                False behaves like a table without the unique index.
        """
        self._entries: dict[int, LedgerEntry] = {}
        self._hashes: set[str] = set()
        # prev_hash -> sequence_id of the entry holding it
        self._successors: dict[str, int] = {}
        self.unique_prev_hash = unique_prev_hash
        self._lock = Lock()

    @classmethod
    def from_entries(cls, entries: Iterable[LedgerEntry]) -> "InMemoryLedgerStore":
        """
        Load already-persisted entries as-is (ids and hashes untouched).

        Used to verify an export offline. Duplicate ids are rejected.
        Duplicate block_hash or prev_hash values are loaded as they are:
        two entries sharing either one cannot both link into a single
        chain, so the verifier reports the later of them as broken
        (a shared prev_hash is always a prev_hash_mismatch).
        """
        store = cls(unique_prev_hash=False)
        for entry in entries:
            if entry.sequence_id in store._entries:
                raise StoreConflictError(f"Duplicate sequence_id {entry.sequence_id}")
            store._entries[entry.sequence_id] = entry
            store._hashes.add(entry.block_hash)
        return store

    def _last_id(self) -> int:
        return max(self._entries) if self._entries else 0

    def _check_successor(self, prev_hash: str, sequence_id: Optional[int] = None) -> None:
        if not self.unique_prev_hash:
            return
        holder = self._successors.get(prev_hash)
        if holder is not None and holder != sequence_id:
            raise StoreConflictError(
                f"prev_hash {prev_hash[:16]}... already has a successor (entry {holder})"
            )

    def append(self, draft: EntryDraft) -> int:
        with self._lock:
            if draft.block_hash in self._hashes:
                raise StoreConflictError(
                    f"Duplicate block_hash {draft.block_hash[:16]}..."
                )
            self._check_successor(draft.prev_hash)
            sequence_id = self._last_id() + 1
            self._entries[sequence_id] = LedgerEntry(
                sequence_id=sequence_id,
                created_at=_utc_now(),
                **draft.model_dump(),
            )
            self._hashes.add(draft.block_hash)
            if self.unique_prev_hash:
                self._successors[draft.prev_hash] = sequence_id
            return sequence_id

    def read_last(self) -> Optional[LedgerEntry]:
        with self._lock:
            if not self._entries:
                return None
            return self._entries[self._last_id()]

    def read_by_id(self, sequence_id: int) -> Optional[LedgerEntry]:
        with self._lock:
            return self._entries.get(sequence_id)

    def read_range(
        self,
        offset: int = 0,
        limit: int = 50,
        filters: Optional[EntryFilter] = None,
        order: SortOrder = "desc",
    ) -> tuple[list[LedgerEntry], int]:
        _check_order(order)
        with self._lock:
            entries = [self._entries[i] for i in sorted(self._entries)]
        if filters is not None and not filters.is_empty:
            entries = [e for e in entries if filters.matches(e)]
        if order == "desc":
            entries.reverse()
        return entries[offset:offset + limit], len(entries)

    def read_after(
        self,
        after_id: int,
        limit: int,
        until_id: Optional[int] = None,
    ) -> list[LedgerEntry]:
        with self._lock:
            ids = sorted(
                i for i in self._entries
                if i > after_id and (until_id is None or i <= until_id)
            )
            return [self._entries[i] for i in ids[:limit]]

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def overwrite_hash_fields(
        self,
        sequence_id: int,
        new_prev_hash: str,
        new_block_hash: str,
    ) -> None:
        with self._lock:
            entry = self._entries.get(sequence_id)
            if entry is None:
                raise EntryNotFoundError(f"No entry with sequence_id {sequence_id}")
            if new_block_hash != entry.block_hash and new_block_hash in self._hashes:
                raise StoreConflictError(
                    f"block_hash {new_block_hash[:16]}... already in use"
                )
            self._check_successor(new_prev_hash, sequence_id)
            self._hashes.discard(entry.block_hash)
            self._hashes.add(new_block_hash)
            if self.unique_prev_hash:
                self._release_successor(entry)
                self._successors[new_prev_hash] = sequence_id
            self._entries[sequence_id] = entry.model_copy(
                update={"prev_hash": new_prev_hash, "block_hash": new_block_hash}
            )

    def retract(self, sequence_id: int, block_hash: str) -> bool:
        with self._lock:
            entry = self._entries.get(sequence_id)
            if entry is None or entry.block_hash != block_hash:
                return False
            if sequence_id != self._last_id():
                return False
            del self._entries[sequence_id]
            self._hashes.discard(block_hash)
            self._release_successor(entry)
            return True

    def _release_successor(self, entry: LedgerEntry) -> None:
        if self._successors.get(entry.prev_hash) == entry.sequence_id:
            del self._successors[entry.prev_hash]

    def clear(self) -> None:
        """Clear all entries (for testing only)."""
        with self._lock:
            self._entries.clear()
            self._hashes.clear()
            self._successors.clear()


# ============================================================
# SQL SHARED QUERIES
# ============================================================

class _SqlLedgerStore(LedgerStore):
    """
    Shared query logic for DB-API backends.

    Subclasses provide _connection() (a context manager yielding a
    connection whose work is committed on exit) and _translate().
    """

    PLACEHOLDER = "?"

    @abstractmethod
    def _connection(self) -> Any:
        pass

    @abstractmethod
    def _translate(self, e: Exception) -> Exception:
        """Map a driver exception to a StoreError (or return it unchanged)."""
        pass

    def _sql(self, query: str) -> str:
        return query.replace("?", self.PLACEHOLDER)

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[tuple]:
        try:
            with self._connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(self._sql(query), params)
                    return cursor.fetchone()
                finally:
                    cursor.close()
        except StoreError:
            raise
        except Exception as e:
            translated = self._translate(e)
            if translated is e:
                raise
            raise translated from e

    def _fetchall(self, query: str, params: tuple = ()) -> list[tuple]:
        try:
            with self._connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(self._sql(query), params)
                    return cursor.fetchall()
                finally:
                    cursor.close()
        except StoreError:
            raise
        except Exception as e:
            translated = self._translate(e)
            if translated is e:
                raise
            raise translated from e

    def _execute(self, query: str, params: tuple = ()) -> int:
        """Execute a write; returns the affected row count."""
        try:
            with self._connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(self._sql(query), params)
                    return cursor.rowcount
                finally:
                    cursor.close()
        except StoreError:
            raise
        except Exception as e:
            translated = self._translate(e)
            if translated is e:
                raise
            raise translated from e

    def read_last(self) -> Optional[LedgerEntry]:
        row = self._fetchone(
            f"SELECT {_COLUMNS} FROM ledger_entries ORDER BY sequence_id DESC LIMIT 1"
        )
        return _row_to_entry(row) if row else None

    def read_by_id(self, sequence_id: int) -> Optional[LedgerEntry]:
        row = self._fetchone(
            f"SELECT {_COLUMNS} FROM ledger_entries WHERE sequence_id = ?",
            (sequence_id,),
        )
        return _row_to_entry(row) if row else None

    def read_range(
        self,
        offset: int = 0,
        limit: int = 50,
        filters: Optional[EntryFilter] = None,
        order: SortOrder = "desc",
    ) -> tuple[list[LedgerEntry], int]:
        direction = _check_order(order).upper()
        where, params = _build_where(filters, "?")
        rows = self._fetchall(
            f"SELECT {_COLUMNS} FROM ledger_entries WHERE {where} "
            f"ORDER BY sequence_id {direction} LIMIT ? OFFSET ?",
            tuple(params) + (limit, offset),
        )
        total = self._fetchone(
            f"SELECT COUNT(*) FROM ledger_entries WHERE {where}",
            tuple(params),
        )
        return [_row_to_entry(r) for r in rows], (total[0] if total else 0)

    def read_after(
        self,
        after_id: int,
        limit: int,
        until_id: Optional[int] = None,
    ) -> list[LedgerEntry]:
        if until_id is None:
            rows = self._fetchall(
                f"SELECT {_COLUMNS} FROM ledger_entries WHERE sequence_id > ? "
                "ORDER BY sequence_id ASC LIMIT ?",
                (after_id, limit),
            )
        else:
            rows = self._fetchall(
                f"SELECT {_COLUMNS} FROM ledger_entries "
                "WHERE sequence_id > ? AND sequence_id <= ? "
                "ORDER BY sequence_id ASC LIMIT ?",
                (after_id, until_id, limit),
            )
        return [_row_to_entry(r) for r in rows]

    def count(self) -> int:
        row = self._fetchone("SELECT COUNT(*) FROM ledger_entries")
        return row[0] if row else 0

    def overwrite_hash_fields(
        self,
        sequence_id: int,
        new_prev_hash: str,
        new_block_hash: str,
    ) -> None:
        updated = self._execute(
            "UPDATE ledger_entries SET prev_hash = ?, block_hash = ? "
            "WHERE sequence_id = ?",
            (new_prev_hash, new_block_hash, sequence_id),
        )
        if updated == 0:
            raise EntryNotFoundError(f"No entry with sequence_id {sequence_id}")

    def retract(self, sequence_id: int, block_hash: str) -> bool:
        deleted = self._execute(
            "DELETE FROM ledger_entries "
            "WHERE sequence_id = ? AND block_hash = ? "
            "AND sequence_id = (SELECT MAX(sequence_id) FROM ledger_entries)",
            (sequence_id, block_hash),
        )
        return deleted == 1


_APPEND_SQL = (
    "INSERT INTO ledger_entries ("
    "sequence_id, block_hash, prev_hash, action, actor_name, "
    'target_type, target_name, details, "timestamp", created_at) '
    "SELECT COALESCE(MAX(sequence_id), 0) + 1, ?, ?, ?, ?, ?, ?, ?, ?, ? "
    "FROM ledger_entries"
)


def _append_params(draft: EntryDraft) -> tuple:
    return (
        draft.block_hash,
        draft.prev_hash,
        draft.action,
        draft.actor_name,
        draft.target_type,
        draft.target_name,
        draft.details,
        draft.timestamp,
        _utc_now().isoformat(),
    )


# ============================================================
# SQLITE IMPLEMENTATION
# ============================================================

class SqliteLedgerStore(_SqlLedgerStore):
    """
    SQLite implementation of LedgerStore.

    Provides:
    - Durability in a single file
    - WAL journal mode for concurrent readers
    - BEGIN IMMEDIATE around id assignment + insert, so the id and the
      row become visible together

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    busy_timeout:
        Seconds to wait for the write lock before giving up (transient).
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout
        self.init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=self._busy_timeout,
            isolation_level=None,  # explicit transactions only
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self._connection() as conn:
            conn.execute(LEDGER_DDL)
            for ddl in LEDGER_INDEXES:
                conn.execute(ddl)
            try:
                conn.execute(LEDGER_LINK_INDEX)
            except sqlite3.IntegrityError as e:
                self.unique_prev_hash = False
                _log_missing_link_index(e)
            else:
                self.unique_prev_hash = True

    def _translate(self, e: Exception) -> Exception:
        if isinstance(e, sqlite3.IntegrityError):
            return StoreConflictError(f"Append conflict: {e}")
        if isinstance(e, sqlite3.OperationalError):
            # "database is locked", disk I/O errors, ...
            return TransientStoreError(f"SQLite unavailable: {e}")
        return e

    def append(self, draft: EntryDraft) -> int:
        try:
            with self._connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = conn.execute(_APPEND_SQL, _append_params(draft))
                    sequence_id = conn.execute(
                        "SELECT sequence_id FROM ledger_entries WHERE rowid = ?",
                        (cursor.lastrowid,),
                    ).fetchone()[0]
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                return sequence_id
        except StoreError:
            raise
        except sqlite3.Error as e:
            translated = self._translate(e)
            if translated is e:
                raise
            raise translated from e


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

class PostgresLedgerStore(_SqlLedgerStore):
    """
    PostgreSQL implementation of LedgerStore.

    Provides:
    - Full ACID guarantees
    - Durability (entries survive restarts)
    - Multi-instance support (shared database)
    - Lock/statement timeouts to prevent hanging

    Concurrency: append is a single INSERT ... SELECT MAX + 1. Two
    concurrent appends that compute the same id serialize on the primary
    key index; the loser gets unique_violation -> StoreConflictError.
    Two appends on the same prev_hash collide the same way on the
    prev_hash unique index. No lock is held between the coordinator's
    read and its write.

    THREAD SAFETY:
    A connection is opened per operation, never stored on the instance,
    so one store can be shared by many threads.

    Usage:
        store = PostgresLedgerStore(lambda: psycopg2.connect(dsn))
        store.init_schema()
    """

    PLACEHOLDER = "%s"

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # SQLSTATE codes
    PGCODE_UNIQUE_VIOLATION = "23505"
    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"
    PGCODE_SERIALIZATION_FAILURE = "40001"
    PGCODE_DEADLOCK_DETECTED = "40P01"

    TRANSIENT_PGCODES = (
        PGCODE_LOCK_NOT_AVAILABLE,
        PGCODE_QUERY_CANCELED,
        PGCODE_SERIALIZATION_FAILURE,
        PGCODE_DEADLOCK_DETECTED,
    )

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL ledger store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for a row lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _connection(self) -> Generator[Any, None, None]:
        """
        One transaction per call: timeouts are SET LOCAL so they never
        leak to the next user of the connection.
        """
        conn = self._connection_factory()
        conn.autocommit = False
        try:
            cursor = conn.cursor()
            try:
                cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            finally:
                cursor.close()
            yield conn
            conn.commit()
        except BaseException:
            try:
                conn.rollback()
            except psycopg2.Error:
                pass  # Connection might be broken
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(LEDGER_DDL)
                for ddl in LEDGER_INDEXES:
                    cursor.execute(ddl)
            finally:
                cursor.close()

        # Own transaction: a failure here must not roll back the table
        try:
            with self._connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(LEDGER_LINK_INDEX)
                finally:
                    cursor.close()
        except psycopg2.IntegrityError as e:
            self.unique_prev_hash = False
            _log_missing_link_index(e)
        else:
            self.unique_prev_hash = True

    def _translate(self, e: Exception) -> Exception:
        """
        Map a psycopg2 exception to a StoreError.

        NOTE: PostgreSQL uses 57014 (query_canceled) for BOTH lock_timeout
        and statement_timeout. Either way the write did not happen and a
        retry is safe.
        """
        pgcode = getattr(e, "pgcode", None)
        if pgcode == self.PGCODE_UNIQUE_VIOLATION:
            return StoreConflictError(f"Append conflict: {getattr(e, 'pgerror', None) or e}")
        if pgcode in self.TRANSIENT_PGCODES:
            return TransientStoreError(f"PostgreSQL busy ({pgcode}): {e}")
        if isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            return TransientStoreError(f"PostgreSQL unavailable: {e}")
        return e

    def append(self, draft: EntryDraft) -> int:
        row = self._fetchone(
            _APPEND_SQL + " RETURNING sequence_id",
            _append_params(draft),
        )
        return row[0]
