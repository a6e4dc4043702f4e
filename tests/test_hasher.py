"""
Tests for the Hash Engine - THIS IS SACRED GROUND.

If any of these change behavior, every stored block_hash becomes
unverifiable.
"""

import hashlib
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID

import pytest

from blocklog.core.hasher import CanonicalSerializationError, HashEngine, compute_block_hash


T1 = "2024-01-01T12:00:00.000000Z"

BASE = dict(
    prev_hash="0",
    action="domain_register",
    actor_name="alice",
    target_type="domain",
    target_name="alice.example",
    details_json='{"amount":10}',
    timestamp=T1,
)


class TestBlockHash:
    """Test block hash computation."""

    def test_known_input(self):
        """The hash is SHA-256 of the seven fields joined by '|'."""
        expected = hashlib.sha256(
            '0|domain_register|alice|domain|alice.example|{"amount":10}|2024-01-01T12:00:00.000000Z'
            .encode("utf-8")
        ).hexdigest()
        assert HashEngine.compute(**BASE) == expected

    def test_output_is_lowercase_hex(self):
        """Output is 64 lowercase hex characters."""
        digest = HashEngine.compute(**BASE)
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)

    def test_deterministic(self):
        """Same input always produces same hash."""
        assert HashEngine.compute(**BASE) == HashEngine.compute(**BASE)

    @pytest.mark.parametrize("field_name", sorted(BASE))
    def test_every_field_changes_hash(self, field_name):
        """Changing any single field changes the hash."""
        changed = dict(BASE)
        changed[field_name] = BASE[field_name] + "x"
        assert HashEngine.compute(**changed) != HashEngine.compute(**BASE)

    def test_none_serializes_as_empty_string(self):
        """Absent optional fields hash like empty strings (positions are stable)."""
        with_none = dict(BASE, actor_name=None, target_type=None, target_name=None, details_json=None)
        with_empty = dict(BASE, actor_name="", target_type="", target_name="", details_json="")
        assert HashEngine.compute(**with_none) == HashEngine.compute(**with_empty)

        expected = hashlib.sha256(f"0|domain_register|||||{T1}".encode("utf-8")).hexdigest()
        assert HashEngine.compute(**with_none) == expected

    def test_field_positions_matter(self):
        """Moving a value to another field changes the hash."""
        a = dict(BASE, actor_name="x", target_type=None)
        b = dict(BASE, actor_name=None, target_type="x")
        assert HashEngine.compute(**a) != HashEngine.compute(**b)

    def test_utf8_input(self):
        """Non-ASCII content is hashed as UTF-8."""
        data = dict(BASE, actor_name="Zoë")
        expected = hashlib.sha256(
            f'0|domain_register|Zoë|domain|alice.example|{{"amount":10}}|{T1}'.encode("utf-8")
        ).hexdigest()
        assert HashEngine.compute(**data) == expected

    def test_module_alias(self):
        assert compute_block_hash(**BASE) == HashEngine.compute(**BASE)

    def test_matches_is_exact(self):
        """Stored hashes are compared exactly."""
        digest = HashEngine.compute(**BASE)
        assert HashEngine.matches(digest, digest)
        assert not HashEngine.matches(digest, digest.upper())
        assert not HashEngine.matches(digest, digest[:-1])
        assert not HashEngine.matches(digest, "0")


class TestTimestamps:
    """Test canonical timestamp formatting."""

    def test_format(self):
        dt = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert HashEngine.format_timestamp(dt) == "2024-01-01T12:00:00.000000Z"

    def test_microseconds_preserved(self):
        dt = datetime(2024, 1, 1, 12, 0, 0, 1, tzinfo=timezone.utc)
        assert HashEngine.format_timestamp(dt) == "2024-01-01T12:00:00.000001Z"

    def test_converted_to_utc(self):
        """Same moment in another timezone gives the same string."""
        plus5 = timezone(timedelta(hours=5))
        dt = datetime(2024, 1, 1, 17, 0, 0, tzinfo=plus5)
        assert HashEngine.format_timestamp(dt) == "2024-01-01T12:00:00.000000Z"

    def test_naive_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            HashEngine.format_timestamp(datetime(2024, 1, 1, 12, 0, 0))

    def test_now_has_canonical_shape(self):
        stamp = HashEngine.utc_now_timestamp()
        assert len(stamp) == len("2024-01-01T12:00:00.000000Z")
        assert stamp.endswith("Z")
        assert stamp[10] == "T"


class Color(Enum):
    RED = "red"


class TestCanonicalDetails:
    """Test canonical serialization of event details."""

    def test_compact_and_sorted(self):
        assert HashEngine.canonical_details({"b": 2, "a": 1}) == '{"a":1,"b":2}'

    def test_example(self):
        assert HashEngine.canonical_details({"amount": 10}) == '{"amount":10}'

    def test_recursively_sorted(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": [{"b": 3, "a": 4}]}
        data2 = {"inner": [{"a": 4, "b": 3}], "outer": {"a": 2, "z": 1}}
        assert HashEngine.canonical_details(data1) == HashEngine.canonical_details(data2)
        assert HashEngine.canonical_details(data1) == '{"inner":[{"a":4,"b":3}],"outer":{"a":2,"z":1}}'

    def test_nulls_preserved(self):
        """A null value is data, not absence."""
        assert HashEngine.canonical_details({"a": 1, "b": None}) == '{"a":1,"b":null}'
        assert HashEngine.canonical_details({"a": 1, "b": None}) != HashEngine.canonical_details({"a": 1})

    def test_empty_values_preserved(self):
        assert HashEngine.canonical_details({"a": "", "b": [], "c": {}}) == '{"a":"","b":[],"c":{}}'

    def test_empty_or_absent_mapping_is_none(self):
        assert HashEngine.canonical_details(None) is None
        assert HashEngine.canonical_details({}) is None

    def test_ascii_only(self):
        assert HashEngine.canonical_details({"name": "Zoë"}) == '{"name":"Zo\\u00eb"}'

    def test_rich_types(self):
        details = {
            "amount": Decimal("10.50"),
            "at": datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            "day": date(2024, 1, 2),
            "id": UUID("12345678-1234-5678-1234-567812345678"),
            "color": Color.RED,
            "pair": (1, 2),
            "flag": True,
        }
        assert HashEngine.canonical_details(details) == (
            '{"amount":"10.50","at":"2024-01-01T12:00:00.000000Z","color":"red",'
            '"day":"2024-01-02","flag":true,"id":"12345678-1234-5678-1234-567812345678",'
            '"pair":[1,2]}'
        )

    def test_float_rejected(self):
        """Floats are banned."""
        with pytest.raises(CanonicalSerializationError, match="float"):
            HashEngine.canonical_details({"amount": 10.5})

    def test_nested_float_rejected_with_path(self):
        with pytest.raises(CanonicalSerializationError, match=r"items\[1\]"):
            HashEngine.canonical_details({"items": [1, 2.0]})

    def test_set_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="set"):
            HashEngine.canonical_details({"tags": {"a", "b"}})

    def test_bytes_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="bytes"):
            HashEngine.canonical_details({"blob": b"abc"})

    def test_non_string_keys_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="must be string"):
            HashEngine.canonical_details({1: "a"})

    def test_non_mapping_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="mapping"):
            HashEngine.canonical_details(["a", "b"])

    def test_naive_datetime_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            HashEngine.canonical_details({"at": datetime(2024, 1, 1)})
