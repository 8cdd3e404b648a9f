"""Idempotency key generation helpers for clients and internal callers.

The server only enforces the key format and its uniqueness semantics, so
any of these strategies may be used interchangeably.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import time
import uuid
from typing import Any


class IdempotencyKeyGenerator:
    """Mint tokens matching ``[A-Za-z0-9_-]{8,128}``."""

    @staticmethod
    def generate() -> str:
        """Random UUID4 token."""
        return str(uuid.uuid4())

    @staticmethod
    def from_request_body(body: Any) -> str:
        """Content-derived token: the same body always yields the same key.

        Args:
            body: JSON-serializable payload.

        Returns:
            First 32 hex chars of the SHA-256 of the canonical JSON encoding.
        """
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]

    @staticmethod
    def with_timestamp() -> str:
        """``<epoch milliseconds>-<16 random hex chars>``."""
        return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"
