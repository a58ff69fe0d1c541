"""
Audit Fingerprinting

Deterministic serialization and SHA-256 hashing of audit exports.
Two exports of the same ledger state produce the same fingerprint, so
an auditor can re-read the ledger and compare.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected at the top level
2. Dictionary keys: sorted recursively
3. Nulls: omitted
4. Empty strings, lists and dicts: preserved
5. Datetimes: ISO 8601, UTC, microseconds, Z suffix (naive rejected)
6. Enums: their value
7. Floats, bytes and sets: rejected
8. JSON output: no whitespace, ASCII only

Event entries are additionally chained: each link hashes the previous
link together with the canonical event, so dropping or reordering an
event changes every later link.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class AuditHasher:
    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise CanonicalSerializationError(f"Datetime at {path} is timezone-naive")
            utc = value.astimezone(timezone.utc)
            return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond:06d}Z"

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, (bool, int, str)):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}; use an integer or string"
            )

        if isinstance(value, (list, tuple)):
            return [cls._serialize_value(v, f"{path}[{i}]") for i, v in enumerate(value)]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}"
        )

    @classmethod
    def _to_canonical_dict(cls, data: dict, path: str = "") -> dict:
        result = {}
        for key in sorted(data.keys()):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """Canonical JSON for a dict or pydantic model."""
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, got {type(data).__name__}"
            )
        canonical = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._to_canonical_dict(data)}
        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: Any) -> str:
        """Hex SHA-256 of the canonical form (64 lowercase characters)."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def chain_link(cls, entry: Any, previous: Optional[str] = None) -> str:
        canonical = cls.canonicalize(entry)
        chain_input = canonical if previous is None else f"{previous}:{canonical}"
        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def chain(cls, entries: Iterable[Any]) -> list[str]:
        """Links for each entry, in order."""
        links: list[str] = []
        previous = None
        for entry in entries:
            previous = cls.chain_link(entry, previous)
            links.append(previous)
        return links

    @classmethod
    def verify(cls, data: Any, expected_hash: str) -> bool:
        try:
            computed = cls.hash_data(data)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
