"""
Repair Journal

An append-only, hash-chained, signed JSON-lines file that records every
applied chain repair. It lives OUTSIDE the ledger: repairs rewrite the
ledger's own hash fields, so the ledger cannot be the witness of them.

RECORD FORMAT (one JSON object per line):
    {
        "seq": 3,
        "kind": "block_repaired",
        "recorded_at": "2024-01-15T10:30:00.000000Z",
        "body": {...},
        "prev_record_hash": "<record_hash of seq 2>",
        "record_hash": "<sha256 of canonical JSON of the five fields above>",
        "signature": "<Ed25519 over record_hash, base64>",
        "public_key": "<base64>"
    }

- The first record's prev_record_hash is 64 zeros
- Every append is flushed and fsync'd before append() returns
- Editing, dropping or reordering a line breaks the hash chain;
  re-hashing a line breaks its signature
"""

import hashlib
import json
import os
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, Optional

from ..observability import get_logger
from .errors import LedgerError
from .hasher import CanonicalSerializationError, HashEngine
from .signer import Signer
from .signing_service import SigningService, get_signing_service

logger = get_logger(__name__)


JOURNAL_GENESIS_HASH = "0" * 64
DEFAULT_JOURNAL_PATH = "repair-journal.jsonl"


class JournalError(LedgerError):
    """Raised when the journal cannot be written or read."""
    pass


class JournalIntegrityError(JournalError):
    """Raised when a journal record fails verification."""

    def __init__(self, message: str, seq: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.seq = seq
        self.reason = reason


class JournalKind(str, Enum):
    """What a journal record describes."""
    REPAIR_STARTED = "repair_started"
    BLOCK_REPAIRED = "block_repaired"
    REPAIR_COMPLETED = "repair_completed"
    REPAIR_FAILED = "repair_failed"


@dataclass(frozen=True)
class JournalRecord:
    """One line of the journal."""
    seq: int
    kind: str
    recorded_at: str
    body: dict
    prev_record_hash: str
    record_hash: str
    signature: str
    public_key: str

    def hashed_fields(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind,
            "recorded_at": self.recorded_at,
            "body": self.body,
            "prev_record_hash": self.prev_record_hash,
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JournalRecord":
        try:
            return cls(
                seq=data["seq"],
                kind=data["kind"],
                recorded_at=data["recorded_at"],
                body=data["body"],
                prev_record_hash=data["prev_record_hash"],
                record_hash=data["record_hash"],
                signature=data["signature"],
                public_key=data["public_key"],
            )
        except KeyError as e:
            raise JournalError(f"Journal record missing field {e}") from e


def compute_record_hash(fields: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of a record's hashed fields."""
    return hashlib.sha256(HashEngine.dumps(fields).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class JournalVerification:
    """Result of walking the journal."""
    valid: bool
    records_checked: int
    first_invalid_seq: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RepairJournal:
    """
    Append-only signed journal file.

    Writers in one process are serialized by a lock. The journal is meant
    to have a single writer process (the one running repairs).
    """

    def __init__(self, path: Path, signing_service: Optional[SigningService] = None):
        self._path = Path(path)
        self._signing = signing_service
        self._lock = Lock()

    @classmethod
    def from_env(cls) -> "RepairJournal":
        return cls(Path(os.environ.get("BLOCKLOG_JOURNAL_PATH", DEFAULT_JOURNAL_PATH)))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def signing_service(self) -> SigningService:
        # Resolved on first write so read-only use never needs a key
        if self._signing is None:
            self._signing = get_signing_service()
        return self._signing

    # ================================================================
    # WRITE
    # ================================================================

    def append(self, kind: JournalKind, body: dict[str, Any]) -> JournalRecord:
        """
        Append a signed record and fsync it.

        Raises:
            JournalError: The record could not be written durably
        """
        with self._lock:
            last = self._last_record()
            fields = {
                "seq": (last.seq + 1) if last else 1,
                "kind": JournalKind(kind).value,
                "recorded_at": HashEngine.utc_now_timestamp(),
                "body": body,
                "prev_record_hash": last.record_hash if last else JOURNAL_GENESIS_HASH,
            }
            record_hash = compute_record_hash(fields)
            record = JournalRecord(
                record_hash=record_hash,
                signature=self.signing_service.sign(record_hash),
                public_key=self.signing_service.public_key,
                **fields,
            )

            line = HashEngine.dumps(record.to_dict()) + "\n"
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise JournalError(f"Could not write journal {self._path}: {e}") from e

        logger.info(
            "Journal record written",
            journal_seq=record.seq,
            kind=record.kind,
        )
        return record

    # ================================================================
    # READ
    # ================================================================

    def records(self) -> Iterator[JournalRecord]:
        """
        Iterate over every record in file order.

        Raises:
            JournalError: A line is not valid JSON or is missing fields
        """
        if not self._path.exists():
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise JournalError(f"Malformed journal line {line_no}: {e}") from e
                    if not isinstance(data, dict):
                        raise JournalError(f"Malformed journal line {line_no}: not an object")
                    yield JournalRecord.from_dict(data)
        except OSError as e:
            raise JournalError(f"Could not read journal {self._path}: {e}") from e

    def _last_record(self) -> Optional[JournalRecord]:
        last = None
        for record in self.records():
            last = record
        return last

    # ================================================================
    # VERIFY
    # ================================================================

    def verify(self, public_key: Optional[str] = None) -> JournalVerification:
        """
        Walk the journal and check every record.

        Args:
            public_key: If given, every record must be signed by this key.
                Otherwise each record is checked against its own public_key
                (proves integrity, not origin).
        """
        checked = 0
        expected_prev = JOURNAL_GENESIS_HASH
        try:
            for record in self.records():
                checked += 1
                reason = self._check_record(record, checked, expected_prev, public_key)
                if reason is not None:
                    logger.warning(
                        "Journal verification failed",
                        journal_seq=record.seq,
                        reason=reason,
                    )
                    return JournalVerification(
                        valid=False,
                        records_checked=checked,
                        first_invalid_seq=record.seq,
                        reason=reason,
                    )
                expected_prev = record.record_hash
        except JournalError as e:
            return JournalVerification(
                valid=False,
                records_checked=checked + 1,
                first_invalid_seq=checked + 1,
                reason=f"malformed: {e}",
            )

        return JournalVerification(valid=True, records_checked=checked)

    def ensure_valid(self, public_key: Optional[str] = None) -> JournalVerification:
        result = self.verify(public_key)
        if not result.valid:
            raise JournalIntegrityError(
                f"Journal broken at record {result.first_invalid_seq}: {result.reason}",
                seq=result.first_invalid_seq,
                reason=result.reason,
            )
        return result

    @staticmethod
    def _check_record(
        record: JournalRecord,
        position: int,
        expected_prev: str,
        public_key: Optional[str],
    ) -> Optional[str]:
        if record.seq != position:
            return "sequence_gap"
        if record.prev_record_hash != expected_prev:
            return "prev_record_hash_mismatch"
        try:
            recomputed = compute_record_hash(record.hashed_fields())
        except CanonicalSerializationError as e:
            return f"unhashable: {e}"
        if not HashEngine.matches(recomputed, record.record_hash):
            return "record_hash_mismatch"
        if public_key is not None and record.public_key != public_key:
            return "unexpected_public_key"
        if not Signer.verify(record.record_hash, record.signature, record.public_key):
            return "bad_signature"
        return None
