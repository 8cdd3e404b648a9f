"""Idempotency-Key deduplication for non-idempotent HTTP methods.

State per (user, endpoint, token), kept in the shared store:

- no record, no lock: the first request acquires the lock and runs
- lock present: a duplicate is rejected with 409 until the lock is released
  or expires (crash recovery after ``lock_ttl_seconds``)
- record present: the stored response is replayed without running the handler
  until the record expires after ``response_ttl_seconds``

The handler is treated as returning a structured ``CapturedResponse`` rather
than writing to the client, so capture happens before delivery.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Mapping

from pydantic import ValidationError

from subsidy_api.adapters.store.base import AbstractKeyValueStore, StoreUnavailableError
from subsidy_api.core.auth import ANONYMOUS_USER
from subsidy_api.core.errors import (
    IdempotencyConflictAppError,
    IdempotencyKeyReuseAppError,
    StoreUnavailableAppError,
    ValidationAppError,
)
from subsidy_api.core.logging import hash_identifier
from subsidy_api.schemas.idempotency import CapturedResponse, IdempotencyRecord

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADERS = ("Idempotency-Key", "X-Idempotency-Key")
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")

DEFAULT_RESPONSE_TTL_SECONDS = 86400
DEFAULT_LOCK_TTL_SECONDS = 30

Handler = Callable[[], Awaitable[CapturedResponse]]


@dataclass(frozen=True)
class IdempotentResult:
    """Response to deliver and whether it came from the cache."""

    response: CapturedResponse
    replayed: bool


def extract_token(headers: Mapping[str, str]) -> str | None:
    """Return the client idempotency token, preferring ``Idempotency-Key``.

    Args:
        headers: Case-insensitive request headers.

    Returns:
        The token, or None when neither header is present.
    """
    for name in IDEMPOTENCY_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


def validate_format(token: str) -> bool:
    """Check a token against ``[A-Za-z0-9_-]{8,128}``.

    Examples:
        >>> validate_format("abc12345")
        True
        >>> validate_format("short")
        False
        >>> validate_format("has space-123")
        False
    """
    return bool(TOKEN_PATTERN.fullmatch(token))


def applies_to(method: str) -> bool:
    """Whether requests with this HTTP method are deduplicated."""
    return method.upper() not in SAFE_METHODS


def request_fingerprint(method: str, path: str, body: bytes) -> str:
    """Hash of the logical request a token is bound to."""
    hasher = hashlib.sha256()
    hasher.update(method.upper().encode())
    hasher.update(b"\x00")
    hasher.update(path.encode())
    hasher.update(b"\x00")
    hasher.update(body)
    return hasher.hexdigest()


class IdempotencyCoordinator:
    """Guarantees at-most-once handler execution per idempotency key."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        response_ttl_seconds: int = DEFAULT_RESPONSE_TTL_SECONDS,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        key_prefix: str = "idempotency",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if response_ttl_seconds < 1:
            raise ValueError("response_ttl_seconds must be >= 1")
        if lock_ttl_seconds < 1:
            raise ValueError("lock_ttl_seconds must be >= 1")

        self._store = store
        self._response_ttl = response_ttl_seconds
        self._lock_ttl = lock_ttl_seconds
        self._key_prefix = key_prefix
        self._clock = clock

    def compute_key(self, user_id: str | None, path: str, token: str) -> str:
        """Build the cache key namespaced by user.

        Args:
            user_id: Authenticated user id, or None for anonymous callers.
            path: Request path.
            token: Client idempotency token.

        Returns:
            ``<prefix>:<user>:<sha256(path, token)>``.
        """
        digest = hashlib.sha256(f"{path}\x00{token}".encode()).hexdigest()
        return f"{self._key_prefix}:{user_id or ANONYMOUS_USER}:{digest}"

    @staticmethod
    def lock_key(cache_key: str) -> str:
        return f"{cache_key}:lock"

    async def try_acquire_lock(self, cache_key: str, fingerprint: str = "") -> bool:
        """Atomically take the in-flight lock for ``cache_key``.

        Raises:
            StoreUnavailableAppError: If the store cannot be reached.
        """
        try:
            return await self._store.set_if_absent(
                self.lock_key(cache_key), fingerprint or "1", self._lock_ttl
            )
        except StoreUnavailableError as exc:
            raise self._store_unavailable("acquire_lock", exc) from exc

    async def release_lock(self, cache_key: str) -> None:
        """Drop the lock; on store failure it is left to expire."""
        try:
            await self._store.delete(self.lock_key(cache_key))
        except StoreUnavailableError as exc:
            logger.warning(
                "idempotency.lock_release_failed",
                extra={
                    "cache_key_hash": hash_identifier(cache_key),
                    "lock_ttl_s": self._lock_ttl,
                    "error_msg": str(exc),
                },
            )

    async def load_record(self, cache_key: str) -> IdempotencyRecord | None:
        """Fetch a cached response record.

        Raises:
            StoreUnavailableAppError: If the store cannot be reached.
        """
        try:
            raw = await self._store.get(cache_key)
        except StoreUnavailableError as exc:
            raise self._store_unavailable("load_record", exc) from exc

        if raw is None:
            return None
        try:
            return IdempotencyRecord.model_validate_json(raw)
        except ValidationError:
            logger.error(
                "idempotency.record_corrupt",
                extra={"cache_key_hash": hash_identifier(cache_key)},
            )
            return None

    async def save_record(self, cache_key: str, response: CapturedResponse, fingerprint: str) -> None:
        """Persist a completed response; failures are logged, not raised."""
        created_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        record = IdempotencyRecord.from_response(
            response,
            fingerprint=fingerprint,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=self._response_ttl),
        )
        try:
            await self._store.set(cache_key, record.model_dump_json(), self._response_ttl)
        except StoreUnavailableError as exc:
            logger.error(
                "idempotency.persist_failed",
                extra={
                    "cache_key_hash": hash_identifier(cache_key),
                    "status_code": response.status_code,
                    "error_msg": str(exc),
                },
            )

    async def execute(
        self,
        *,
        token: str,
        user_id: str | None,
        method: str,
        path: str,
        body: bytes,
        handler: Handler,
    ) -> IdempotentResult:
        """Run ``handler`` at most once for this token, or replay its response.

        Args:
            token: Client idempotency token (validated here).
            user_id: Authenticated user id, or None.
            method: HTTP method.
            path: Request path.
            body: Raw request body.
            handler: Zero-argument coroutine producing the response.

        Returns:
            IdempotentResult with the response to deliver.

        Raises:
            ValidationAppError: Malformed token (no state is created).
            IdempotencyConflictAppError: Same key is in flight.
            IdempotencyKeyReuseAppError: Token was used for a different request.
            StoreUnavailableAppError: Store unreachable before execution.
            Exception: Whatever ``handler`` raises; the lock is released first.
        """
        if not validate_format(token):
            logger.warning(
                "idempotency.invalid_key",
                extra={"token_length": len(token), "request_path": path},
            )
            raise ValidationAppError(
                code="invalid_idempotency_key",
                message="Invalid idempotency key format",
                details={"hint": "Use 8-128 characters from A-Z, a-z, 0-9, '_' and '-'"},
            )

        cache_key = self.compute_key(user_id, path, token)
        fingerprint = request_fingerprint(method, path, body)
        log_extra = {"cache_key_hash": hash_identifier(cache_key), "request_path": path}

        record = await self.load_record(cache_key)
        if record is not None:
            return self._replay(record, fingerprint, log_extra)

        if not await self.try_acquire_lock(cache_key, fingerprint):
            # The holder may have finished between the read and the lock attempt.
            record = await self.load_record(cache_key)
            if record is not None:
                return self._replay(record, fingerprint, log_extra)

            logger.info("idempotency.conflict", extra=log_extra)
            raise IdempotencyConflictAppError(
                code="idempotency_request_in_progress",
                message="Request is being processed",
                details={"lock_ttl_seconds": self._lock_ttl},
            )

        logger.debug("idempotency.lock_acquired", extra=log_extra)
        try:
            response = await handler()
        except Exception:
            logger.warning("idempotency.handler_failed", extra=log_extra)
            await self.release_lock(cache_key)
            raise

        await self.save_record(cache_key, response, fingerprint)
        await self.release_lock(cache_key)
        logger.info(
            "idempotency.stored",
            extra={**log_extra, "status_code": response.status_code, "ttl_s": self._response_ttl},
        )
        return IdempotentResult(response=response, replayed=False)

    def _replay(
        self,
        record: IdempotencyRecord,
        fingerprint: str,
        log_extra: dict[str, str],
    ) -> IdempotentResult:
        if record.fingerprint != fingerprint:
            logger.warning("idempotency.key_reused", extra=log_extra)
            raise IdempotencyKeyReuseAppError(
                code="idempotency_key_reused",
                message="Idempotency key was already used with a different request",
                details={"hint": "Generate a new idempotency key for a new request"},
            )

        logger.info("idempotency.replayed", extra={**log_extra, "status_code": record.status_code})
        return IdempotentResult(response=record.to_response(), replayed=True)

    def _store_unavailable(self, operation: str, exc: StoreUnavailableError) -> StoreUnavailableAppError:
        logger.error(
            "idempotency.store_unavailable",
            extra={"operation": operation, "error_msg": str(exc)},
        )
        return StoreUnavailableAppError(
            code="idempotency_store_unavailable",
            message="Idempotency store is unavailable. Retry the request later.",
        )
