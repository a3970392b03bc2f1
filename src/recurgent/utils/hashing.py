"""
recurgent — hashing utilities

Purpose
- Deterministic SHA-256 helpers for bytes, text and JSON-compatible payloads.

Functional requirements
- ``sha256_json`` hashes a canonical rendering (sorted keys, compact separators)
  so equal payloads always produce equal digests regardless of key order.
"""

from __future__ import annotations

import hashlib
import json

__all__ = [
    "canonical_json",
    "sha256_bytes",
    "sha256_json",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def canonical_json(value: object) -> str:
    """Deterministic JSON rendering used for hashing and persistence."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_json(value: object) -> str:
    """Return SHA-256 hex digest of the canonical JSON rendering of ``value``."""

    return sha256_text(canonical_json(value))
