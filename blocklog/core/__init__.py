# Core ledger services
from .hasher import HashEngine, CanonicalSerializationError, canonical_details, compute_block_hash
from .errors import (
    LedgerError,
    AppendError,
    ChainForkError,
    RaceDetected,
    ChainInvariantViolation,
    RepairPreconditionError,
    RepairAbortedError,
)
from .coordinator import AppendCoordinator, ChainHead, RetryPolicy
from .verifier import (
    ChainVerifier,
    VerificationReport,
    PREV_HASH_MISMATCH,
    BLOCK_HASH_MISMATCH,
)
from .repair import ChainRepairTool, RepairReport, BlockChange
from .journal import (
    RepairJournal,
    JournalRecord,
    JournalKind,
    JournalVerification,
    JournalError,
    JournalIntegrityError,
)
from .signer import Signer
from .signing_service import SigningService, get_signing_service
from .ledger import AuditLedger

__all__ = [
    "HashEngine",
    "CanonicalSerializationError",
    "canonical_details",
    "compute_block_hash",
    "LedgerError",
    "AppendError",
    "ChainForkError",
    "RaceDetected",
    "ChainInvariantViolation",
    "RepairPreconditionError",
    "RepairAbortedError",
    "AppendCoordinator",
    "ChainHead",
    "RetryPolicy",
    "ChainVerifier",
    "VerificationReport",
    "PREV_HASH_MISMATCH",
    "BLOCK_HASH_MISMATCH",
    "ChainRepairTool",
    "RepairReport",
    "BlockChange",
    "RepairJournal",
    "JournalRecord",
    "JournalKind",
    "JournalVerification",
    "JournalError",
    "JournalIntegrityError",
    "Signer",
    "SigningService",
    "get_signing_service",
    "AuditLedger",
]
