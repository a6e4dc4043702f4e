"""
Hash Engine

Pure function from an entry's fields + previous hash to a content hash.
Same input -> same hash. Always. Forever.

This is SACRED GROUND.

If this breaks, every stored block_hash becomes unverifiable.
Every change here must be backward-compatible or versioned.

BLOCK HASH INPUT:
    prev_hash|action|actor_name|target_type|target_name|details|timestamp

- Seven fields joined by "|"
- None/absent optional fields become "" (never omitted, so positions are stable)
- SHA-256 over the UTF-8 bytes, lowercase hex output
- details is hashed VERBATIM: the engine never reorders it

CANONICAL DETAILS RULES (canonical_details):
1. Top-level must be a mapping with string keys
2. Dictionary keys: sorted recursively (Unicode codepoint order)
3. Nulls: PRESERVED as JSON null (a null value is data here)
4. Empty strings, lists, dicts: preserved
5. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
6. Dates: ISO 8601 (YYYY-MM-DD)
7. UUIDs: lowercase string representation
8. Enums: string value (not name)
9. Decimals: string (preserves precision)
10. Floats: BANNED - use Decimal, int or string instead
11. Sets/bytes: BANNED (no stable ordering / not JSON)
12. JSON output: no extra whitespace, ASCII only
13. Empty or absent mapping: no details at all (None)
"""

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


FIELD_DELIMITER = "|"


class HashEngine:
    """
    Block hash computation and canonical serialization.

    IMMUTABLE CONTRACT:
    - Same logical input -> same hash
    - Forever
    - Across platforms
    - Across Python versions
    """

    # ================================================================
    # BLOCK HASH
    # ================================================================

    @staticmethod
    def canonical_input(
        prev_hash: str,
        action: str,
        actor_name: Optional[str],
        target_type: Optional[str],
        target_name: Optional[str],
        details_json: Optional[str],
        timestamp: str,
    ) -> str:
        """Build the exact string that gets hashed."""
        return FIELD_DELIMITER.join((
            prev_hash,
            action,
            actor_name or "",
            target_type or "",
            target_name or "",
            details_json or "",
            timestamp,
        ))

    @classmethod
    def compute(
        cls,
        prev_hash: str,
        action: str,
        actor_name: Optional[str],
        target_type: Optional[str],
        target_name: Optional[str],
        details_json: Optional[str],
        timestamp: str,
    ) -> str:
        """
        Compute a block hash.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        data = cls.canonical_input(
            prev_hash,
            action,
            actor_name,
            target_type,
            target_name,
            details_json,
            timestamp,
        )
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @classmethod
    def compute_for(cls, entry: Any, prev_hash: Optional[str] = None) -> str:
        """
        Recompute the hash of a stored entry (or draft).

        Args:
            entry: Anything with the content fields of a LedgerEntry
            prev_hash: Override the entry's own prev_hash (repair uses this)
        """
        return cls.compute(
            entry.prev_hash if prev_hash is None else prev_hash,
            entry.action,
            entry.actor_name,
            entry.target_type,
            entry.target_name,
            entry.details,
            entry.timestamp,
        )

    @staticmethod
    def matches(computed: str, stored: str) -> bool:
        """
        Compare two hashes in constant time.

        Stored values are compared exactly: an uppercase or padded stored
        hash is a mismatch, since the wire format is lowercase hex.
        """
        if len(computed) != len(stored):
            return False

        result = 0
        for x, y in zip(computed, stored):
            result |= ord(x) ^ ord(y)

        return result == 0

    # ================================================================
    # TIMESTAMPS
    # ================================================================

    @classmethod
    def format_timestamp(cls, dt: datetime, path: str = "timestamp") -> str:
        """
        Serialize a datetime to canonical ISO 8601 format.

        RULES:
        - Must be timezone-aware (we need to know the absolute moment)
        - Converted to UTC for consistency
        - Includes microseconds (6 digits, zero-padded)
        - Uses Z suffix for UTC

        Format: YYYY-MM-DDTHH:MM:SS.ffffffZ
        """
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware for deterministic serialization. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )

        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + \
               f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def utc_now_timestamp(cls) -> str:
        """Capture the current wall-clock time as a canonical timestamp."""
        return cls.format_timestamp(datetime.now(timezone.utc))

    # ================================================================
    # CANONICAL JSON
    # ================================================================

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        """
        Convert Python objects to JSON-serializable canonical form.

        Raises:
            CanonicalSerializationError: If value cannot be serialized deterministically
        """
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            return cls.format_timestamp(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        # Floats are the #1 long-term determinism hazard
        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads due to platform-dependent "
                "serialization. Use Decimal for precise numbers or string."
            )

        if isinstance(value, Decimal):
            return str(value)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, Mapping):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, (bytes, bytearray)):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path}. "
                "Convert to base64 string first."
            )

        if isinstance(value, (set, frozenset)):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. "
                "Sets have no stable ordering. Convert to sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _to_canonical_dict(cls, data: Mapping[str, Any], path: str = "") -> dict[str, Any]:
        """
        Convert a mapping to canonical form.

        Keys are validated as strings and sorted; values are serialized
        recursively. Null values are kept.
        """
        for key in data.keys():
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path or '<root>'} must be string, "
                    f"got {type(key).__name__}"
                )

        result = {}
        for key in sorted(data.keys()):
            key_path = f"{path}.{key}" if path else key
            result[key] = cls._serialize_value(data[key], key_path)
        return result

    @classmethod
    def dumps(cls, data: Mapping[str, Any]) -> str:
        """Canonical JSON text for a mapping (sorted, compact, ASCII)."""
        if not isinstance(data, Mapping):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a mapping, "
                f"got {type(data).__name__}."
            )
        return json.dumps(
            cls._to_canonical_dict(data),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def canonical_details(cls, details: Optional[Mapping[str, Any]]) -> Optional[str]:
        """
        Serialize an event's details payload.

        Returns:
            Canonical JSON text, or None when there are no details

        Example:
            {"amount": 10} -> '{"amount":10}'
        """
        if details is None:
            return None
        if hasattr(details, "model_dump"):
            details = details.model_dump(mode="python")
        if not isinstance(details, Mapping):
            raise CanonicalSerializationError(
                f"details must be a mapping, got {type(details).__name__}. "
                "Events carry key/value metadata, not bare values."
            )
        if not details:
            return None
        return cls.dumps(details)


# Convenience aliases used across the package
compute_block_hash = HashEngine.compute
canonical_details = HashEngine.canonical_details
