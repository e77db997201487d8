"""
Codec — canonical JSON encoding and the deduplication fingerprint.

hash_input(input)
  - serializes the payload with object keys sorted at every nesting level
    and no insignificant whitespace, so {"a": 1, "b": 2} and {"b": 2, "a": 1}
    produce the same bytes
  - returns the first 16 hex characters of the SHA-256 digest

The fingerprint is only a deduplication key; nothing else relies on it.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any

HASH_LENGTH: int = 16


def canonical_json(value: Any) -> bytes:
    """Deterministic UTF-8 JSON: sorted keys, compact separators."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def hash_input(value: Any) -> str:
    """Fingerprint a job input for deduplication."""
    return hashlib.sha256(canonical_json(value)).hexdigest()[:HASH_LENGTH]
