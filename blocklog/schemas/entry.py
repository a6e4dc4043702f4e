"""
Ledger Entry Schema

This is an append-only audit ledger, not CRUD.
Nothing is "edited". Things happen, and each thing becomes one entry.

Each entry:
- Is written exactly once by the Append Coordinator
- Is hashed over its content plus the previous entry's hash
- Is chained to the entry before it by sequence_id

The only exception is the Chain Repair Tool, which may rewrite
prev_hash/block_hash in place (never the content fields) to restore the
chain after an out-of-band corruption.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .actions import Action, normalize_action


# prev_hash of the first entry ever written
GENESIS_PREV_HASH = "0"

HEX_DIGEST_PATTERN = r"^[0-9a-f]{64}$"


class EntryDraft(BaseModel):
    """
    A fully hashed entry that has not been given a sequence_id yet.

    This is what the Append Coordinator hands to LedgerStore.append().
    The store assigns the sequence_id at write time.
    """
    model_config = ConfigDict(frozen=True)

    prev_hash: str = Field(
        ...,
        description="block_hash of the current tail, or '0' for genesis"
    )
    block_hash: str = Field(
        ...,
        pattern=HEX_DIGEST_PATTERN,
        description="Lowercase hex SHA-256 computed by the Hash Engine"
    )
    action: str
    actor_name: Optional[str] = None
    target_type: Optional[str] = None
    target_name: Optional[str] = None
    details: Optional[str] = Field(
        default=None,
        description="Canonical JSON text, stored verbatim and hashed verbatim"
    )
    timestamp: str = Field(
        ...,
        description="ISO-8601 UTC time captured at append time"
    )

    @field_validator("prev_hash")
    @classmethod
    def _check_prev_hash(cls, value: str) -> str:
        if value != GENESIS_PREV_HASH and (
            len(value) != 64 or any(c not in "0123456789abcdef" for c in value)
        ):
            raise ValueError(
                "prev_hash must be '0' (genesis) or 64 lowercase hex characters"
            )
        return value


class LedgerEntry(BaseModel):
    """
    The persisted entry record.

    Fields are deliberately lenient (plain strings): rows read back from
    storage may have been tampered with, and the verifier has to be able
    to load them in order to report them.
    """
    model_config = ConfigDict(frozen=True)

    sequence_id: int = Field(
        ...,
        ge=1,
        description="Strictly increasing id assigned by the store (1 = genesis)"
    )
    block_hash: str
    prev_hash: str
    action: str
    actor_name: Optional[str] = None
    target_type: Optional[str] = None
    target_name: Optional[str] = None
    details: Optional[str] = None
    timestamp: str

    # Storage metadata, not part of the hash input
    created_at: Optional[datetime] = None

    @property
    def is_genesis(self) -> bool:
        return self.sequence_id == 1

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for API/CLI output."""
        return {
            "id": self.sequence_id,
            "block_hash": self.block_hash,
            "prev_hash": self.prev_hash,
            "action": self.action,
            "actor_name": self.actor_name,
            "target_type": self.target_type,
            "target_name": self.target_name,
            "details": self.details,
            "timestamp": self.timestamp,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EntryFilter(BaseModel):
    """Equality filters for list/read_range queries."""
    model_config = ConfigDict(frozen=True)

    action: Optional[str] = None
    actor_name: Optional[str] = None
    target_type: Optional[str] = None

    def matches(self, entry: LedgerEntry) -> bool:
        if self.action is not None and entry.action != self.action:
            return False
        if self.actor_name is not None and entry.actor_name != self.actor_name:
            return False
        if self.target_type is not None and entry.target_type != self.target_type:
            return False
        return True

    @property
    def is_empty(self) -> bool:
        return self.action is None and self.actor_name is None and self.target_type is None


SortOrder = Literal["asc", "desc"]


class AuditEvent(BaseModel):
    """
    A structured event from an Event Producer.

    This is the input side of record_event(). The ledger does not know
    the business meaning of any of these fields beyond storing them.
    """
    action: str = Field(..., description="Action tag, see schemas.actions.Action")
    actor_name: Optional[str] = Field(
        default=None,
        description="Display name of the principal; None for system-initiated events"
    )
    target_type: Optional[str] = Field(default=None, examples=["domain"])
    target_name: Optional[str] = Field(default=None, examples=["example.py.kg"])
    details: Optional[dict[str, Any]] = None

    @field_validator("action", mode="before")
    @classmethod
    def _check_action(cls, value: Any) -> str:
        if isinstance(value, Action):
            return value.value
        return normalize_action(value)
