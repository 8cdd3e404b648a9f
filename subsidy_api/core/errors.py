"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    hint: str
    limit: int
    remaining: int
    reset_at: str
    retry_after: int
    scope: str
    lock_ttl_seconds: int
    resource_id: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class NotFoundAppError(AppError):
    """Raised when a requested resource does not exist."""


class RateLimitAppError(AppError):
    """Raised when a request exceeds its rate limit quota."""


class IdempotencyConflictAppError(AppError):
    """Raised when a request with the same idempotency key is still in flight."""


class IdempotencyKeyReuseAppError(AppError):
    """Raised when an idempotency key is replayed with a different request."""


class StoreUnavailableAppError(AppError):
    """Raised when the shared key-value store cannot be reached."""
