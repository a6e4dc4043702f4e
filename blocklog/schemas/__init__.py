# Schemas for the blocklog audit ledger.
# These define the contract every stored entry must obey.

from .actions import (
    ACTION_VOCABULARY_VERSION,
    Action,
    is_known_action,
    normalize_action,
)
from .entry import (
    GENESIS_PREV_HASH,
    AuditEvent,
    EntryDraft,
    EntryFilter,
    LedgerEntry,
    SortOrder,
)

__all__ = [
    # Actions
    "ACTION_VOCABULARY_VERSION",
    "Action",
    "is_known_action",
    "normalize_action",
    # Entries
    "GENESIS_PREV_HASH",
    "AuditEvent",
    "EntryDraft",
    "EntryFilter",
    "LedgerEntry",
    "SortOrder",
]
