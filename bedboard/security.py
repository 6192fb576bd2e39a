"""Hashing helpers that keep identities out of structured logs."""

from __future__ import annotations

import hashlib
from typing import Optional


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers."""

    if not value:
        return None
    digest = hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()
    return digest[:16]


__all__ = ["hash_identifier"]
