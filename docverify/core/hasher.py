"""
Hashing Service

Content hashing for documents, hash normalization for ledger interop,
proof-hash derivation, and canonical JSON for rendered artifacts.

HASH FORMAT:
- SHA-256, 64 hex characters
- Canonical form is lowercase WITH the "0x" prefix
- LedgerB stores the prefixed form, LedgerA stores bare hex
- Every comparison goes through normalize_hash() first

PROOF HASH:
    SHA256(bare_hex(document_hash) + organization_id + str(timestamp_ms))
    returned in canonical (prefixed) form

CANONICAL JSON RULES (rendered artifacts only):
1. Version marker "__canon_v" injected at top level
2. Keys sorted recursively
3. None values omitted, empty strings/lists/dicts preserved
4. Datetimes must be timezone-aware, emitted as UTC with Z suffix
5. Dates as YYYY-MM-DD, UUIDs lowercase, Enums by value, Decimals as strings
6. Floats, bytes and sets are rejected
7. Output: no whitespace, ASCII only

Changing any rule changes every artifact hash. Version it.
"""

import hashlib
import hmac
import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from .errors import InvalidHashError


HASH_PREFIX = "0x"

_BARE_HEX = re.compile(r"^[0-9a-f]{64}$")


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Deterministic hashing.

    Same bytes -> same hash. Same logical dict -> same canonical JSON.
    """

    SERIALIZATION_VERSION = 1

    # ================================================================
    # DOCUMENT HASHES
    # ================================================================

    @classmethod
    def hash_document(cls, data: bytes) -> str:
        """
        Hash raw document bytes.

        Returns:
            Canonical hash: "0x" + 64 lowercase hex characters
        """
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError(f"hash_document expects bytes, got {type(data).__name__}")
        return HASH_PREFIX + hashlib.sha256(data).hexdigest()

    @classmethod
    def normalize_hash(cls, value: str) -> str:
        """
        Normalize a hash to canonical form.

        Accepts either case, with or without the 0x prefix.

        Raises:
            InvalidHashError: If the value is not 32 bytes of hex
        """
        if not isinstance(value, str):
            raise InvalidHashError(f"Document hash must be a string, got {type(value).__name__}")
        bare = value.strip().lower()
        if bare.startswith(HASH_PREFIX):
            bare = bare[len(HASH_PREFIX):]
        if not _BARE_HEX.match(bare):
            raise InvalidHashError(f"Invalid document hash: {value!r}")
        return HASH_PREFIX + bare

    @classmethod
    def strip_prefix(cls, value: str) -> str:
        """Normalize and return bare hex (the LedgerA convention)."""
        return cls.normalize_hash(value)[len(HASH_PREFIX):]

    @classmethod
    def is_valid_hash(cls, value: Any) -> bool:
        try:
            cls.normalize_hash(value)
        except InvalidHashError:
            return False
        return True

    @classmethod
    def hashes_equal(cls, a: str | None, b: str | None) -> bool:
        """
        Compare two hashes after normalization.

        Malformed or missing values are never equal to anything.
        """
        if a is None or b is None:
            return False
        try:
            left = cls.normalize_hash(a)
            right = cls.normalize_hash(b)
        except InvalidHashError:
            return False
        return hmac.compare_digest(left, right)

    @classmethod
    def proof_hash(cls, document_hash: str, organization_id: str, timestamp_ms: int) -> str:
        """
        Derive the proof hash binding a document, an organization and a moment.

        Args:
            document_hash: Content hash in any accepted form
            organization_id: Issuing organization
            timestamp_ms: Anchoring time, milliseconds since epoch

        Returns:
            Canonical (prefixed) proof hash
        """
        material = f"{cls.strip_prefix(document_hash)}{organization_id}{int(timestamp_ms)}"
        return HASH_PREFIX + hashlib.sha256(material.encode("utf-8")).hexdigest()

    # ================================================================
    # CANONICAL JSON
    # ================================================================

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert a dict (or pydantic model) to canonical JSON.

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, got {type(data).__name__}"
            )

        canonical = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._canonical_dict(data, "")}
        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """Hash canonical JSON. Returns bare 64-char hex."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def _canonical_dict(cls, data: dict[str, Any], path: str) -> dict[str, Any]:
        result = {}
        for key in sorted(data):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path or '<root>'} must be string, got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            value = cls._canonical_value(data[key], key_path)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def _canonical_value(cls, value: Any, path: str) -> Any:
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. Use Decimal or string."
            )
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, UUID):
            return str(value).lower()
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise CanonicalSerializationError(
                    f"Datetime at {path} is timezone-naive. Attach a timezone."
                )
            utc = value.astimezone(timezone.utc)
            return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond:06d}Z"
        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (list, tuple)):
            return [cls._canonical_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
        if isinstance(value, dict):
            return cls._canonical_dict(value, path)
        if hasattr(value, "model_dump"):
            return cls._canonical_dict(value.model_dump(mode="python"), path)

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )
