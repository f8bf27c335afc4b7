"""
Hashing Service

Deterministic serialization, event hashing, and the two derived keys
the ledger indexes on.

Same input -> same hash. Always.
Replay depends on it: a ledger rebuilt from its events must land on
exactly the same buckets, regions and chain hashes.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output
2. Dictionary keys: sorted recursively, must be strings
3. Nulls: omitted entirely
4. Empty strings, lists and dicts: preserved
5. Bytes: lowercase hex
6. Enums: string value (not name)
7. Floats: BANNED (coordinates are fixed-point integers)
8. Sets: BANNED (no stable ordering)
9. JSON output: no extra whitespace, ASCII only
10. Top-level: must be dict/object

DERIVED KEYS:
- location hash: SHA256("<lat>|<lon>") over the fixed-point integers
- region hash:   SHA256(utf-8 location description)
The two are independent. Two observations can share a region while
sitting in different location buckets, and vice versa.
"""

import hashlib
import hmac
import json
from enum import Enum
from typing import Any


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    If serialization rules change, bump SERIALIZATION_VERSION.
    Existing chains must stay verifiable.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        # Enum before str/int: str-enums are also str instances
        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. "
                "Floats are banned in canonical payloads. "
                "Coordinates must be fixed-point integers scaled by 1e6."
            )

        if isinstance(value, str):
            return value

        if isinstance(value, (bytes, bytearray)):
            return bytes(value).hex()

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

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
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key in data.keys():
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )

        for key in sorted(data.keys()):
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized

        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert data to canonical JSON string.

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(data).__name__}."
            )

        canonical_dict = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._to_canonical_dict(data)}

        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """SHA-256 of the canonical form, lowercase hex."""
        canonical = cls.canonicalize(data)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def event_body(
        event_type: Any,
        entity_id: str,
        caller: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """The part of an event covered by its hash."""
        return {
            "event_type": event_type,
            "entity_id": entity_id,
            "caller": caller,
            "payload": payload,
        }

    @classmethod
    def hash_event(
        cls,
        event_type: Any,
        entity_id: str,
        caller: str,
        payload: dict[str, Any],
        previous_hash: str | None = None,
    ) -> str:
        """
        Hash an event with chain linkage.

        FORMAT:
        - Genesis: SHA256(canonical_body)
        - Chained: SHA256(previous_hash + ":" + canonical_body)
        """
        canonical_body = cls.canonicalize(cls.event_body(event_type, entity_id, caller, payload))

        if previous_hash is None:
            chain_input = canonical_body
        else:
            if len(previous_hash) != 64 or not all(
                c in "0123456789abcdef" for c in previous_hash.lower()
            ):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash}. "
                    "Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical_body}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()

    @classmethod
    def verify_event_hash(cls, event: Any, previous_hash: str | None) -> bool:
        """Recompute an event's hash and compare in constant time."""
        try:
            computed = cls.hash_event(
                event.event_type,
                event.entity_id,
                event.caller,
                event.payload,
                previous_hash,
            )
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, event.event_hash.lower())

    # ================================================================
    # DERIVED KEYS
    # ================================================================

    @staticmethod
    def location_hash(location_lat: int, location_lon: int) -> str:
        """Fine-grained bucket key from fixed-point coordinates."""
        return hashlib.sha256(f"{location_lat}|{location_lon}".encode("utf-8")).hexdigest()

    @staticmethod
    def region_hash(location_desc: str) -> str:
        """Coarse region key from the free-text location description."""
        return hashlib.sha256(location_desc.encode("utf-8")).hexdigest()
