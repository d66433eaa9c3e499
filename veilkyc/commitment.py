"""
VeilKYC Commitment Utilities

Pure functions deriving digests, nullifiers and commitments. Nothing here
touches the network, the clock or any mutable state.

    digest(data)                       SHA-256, 64 lowercase hex chars
    derive_nullifier(doc_digest, sub)  digest("<doc_digest>:<subject>:nullifier")
    derive_commitment(record)          digest of the canonical identity subset
    canonical_json(obj)                JCS-like bytes for content addressing

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import json
import secrets
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Union

from veilkyc.errors import EncodingError

NULLIFIER_TAG = "nullifier"

# Field order of the committed subset. Never derived from dict iteration.
COMMITMENT_FIELDS = ("documentType", "documentNumber", "dateOfBirth", "nationality")


def digest(data: Union[bytes, str]) -> str:
    """SHA-256 hex digest of bytes, or of a string's UTF-8 encoding."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    elif isinstance(data, (bytearray, memoryview)):
        data = bytes(data)
    if not isinstance(data, bytes):
        raise EncodingError(
            f"Cannot digest value of type {type(data).__name__}",
            value_type=type(data).__name__,
        )
    return hashlib.sha256(data).hexdigest()


def derive_nullifier(document_digest: str, subject_id: str) -> str:
    """Nullifier for a (document, subject) pair. The subject is case-normalized."""
    if not isinstance(document_digest, str) or not isinstance(subject_id, str):
        raise EncodingError("Nullifier inputs must be strings")
    return digest(f"{document_digest}:{subject_id.lower()}:{NULLIFIER_TAG}")


def _coerce_json_types(obj: Any) -> Any:
    """Coerce Python objects into strict JSON types.

    - date/datetime objects become ISO strings.
    - Enums become their values.
    - Floats are rejected to avoid non-JCS number edge cases.
    """
    if obj is None:
        return None
    if isinstance(obj, Enum):
        return _coerce_json_types(obj.value)
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise EncodingError("Floats are not allowed in canonical JSON. Use strings or integers.")
    if isinstance(obj, (datetime, date)):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=timezone.utc)
            return obj.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x) for x in obj]
    if isinstance(obj, Mapping):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise EncodingError(f"Object keys must be strings, got {type(k).__name__}")
            out[k] = _coerce_json_types(v)
        return out
    raise EncodingError(
        f"Value of type {type(obj).__name__} is not serializable",
        value_type=type(obj).__name__,
    )


def canonical_json(obj: Any) -> bytes:
    """Canonicalize JSON using a JCS-like subset (sorted keys, compact, UTF-8)."""
    clean = _coerce_json_types(obj)
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def canonical_digest(obj: Any) -> str:
    return digest(canonical_json(obj))


def commitment_subset(record: Any) -> Dict[str, Any]:
    """
    Extract the committed fields in their fixed order.

    Accepts an ``IdentityRecord`` or a mapping with camelCase keys.
    """
    if hasattr(record, "to_dict") and not isinstance(record, Mapping):
        record = record.to_dict()
    if not isinstance(record, Mapping):
        raise EncodingError(f"Cannot commit to value of type {type(record).__name__}")

    subset: Dict[str, Any] = {}
    for name in COMMITMENT_FIELDS:
        if record.get(name) is None:
            raise EncodingError(f"Commitment field missing: {name}", field=name)
        subset[name] = _coerce_json_types(record[name])
    return subset


def derive_commitment(record: Any) -> str:
    """Digest of the canonical identity subset. Insertion order is the field order."""
    subset = commitment_subset(record)
    return digest(json.dumps(subset, separators=(",", ":"), ensure_ascii=False))


def generate_salt() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)
