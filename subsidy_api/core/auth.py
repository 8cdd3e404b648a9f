"""Authentication glue: API key validation and caller identity.

API keys are validated against a comma-separated list from environment
variables. User identity is owned by the upstream auth layer: either it sets
``request.state.user_id`` or the gateway forwards a trusted user id header.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from subsidy_api.core.config import settings
from subsidy_api.core.errors import AuthenticationAppError
from subsidy_api.core.logging import hash_identifier

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Args:
        keys_string: Comma-separated string of API keys, or None.

    Returns:
        Set of trimmed, non-empty API keys.

    Examples:
        >>> sorted(parse_api_keys("key1, key2 , key3 "))
        ['key1', 'key2', 'key3']
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def validate_api_key(provided_key: str) -> None:
    """Validate that provided API key matches configured keys.

    Pure validation logic without FastAPI dependencies for easy testing.

    Args:
        provided_key: API key to validate.

    Raises:
        AuthenticationAppError: If key is invalid or authentication is required but no keys configured.
    """
    if not settings.app.api_key_required:
        return

    valid_keys = parse_api_keys(settings.app.api_keys)

    if not valid_keys:
        logger.error(
            "api_key_validation_failed",
            extra={
                "reason": "api_keys_not_configured",
                "auth_required": settings.app.api_key_required,
            },
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={"hint": "Set APP_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"},
        )

    if provided_key not in valid_keys:
        logger.warning(
            "api_key_validation_failed",
            extra={
                "reason": "invalid_api_key",
                "api_key_hash": hash_identifier(provided_key),
                "auth_required": settings.app.api_key_required,
            },
        )
        raise AuthenticationAppError(
            code="invalid_api_key",
            message="Invalid or missing API key",
        )


def get_api_key(request: Request) -> str | None:
    """Return the API key header value, if any."""
    return request.headers.get(settings.app.api_key_header) or None


def current_user_id(request: Request) -> str | None:
    """Return the authenticated user id for the request, or None.

    ``request.state.user_id`` (set by an auth middleware) takes precedence
    over the trusted gateway header.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return str(user_id)

    header_value = request.headers.get(settings.app.user_id_header, "").strip()
    return header_value or None


async def verify_api_key(request: Request) -> None:
    """API key check for application routes.

    Validates the API key header (``X-API-Key`` by default) against the
    configured keys. Can be disabled by setting APP_API_KEY_REQUIRED=false.
    ``AdmissionRoute`` calls it after rate limiting and before idempotent
    dispatch. It also works as a plain FastAPI dependency.

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    if not settings.app.api_key_required:
        logger.debug("auth.skipped", extra={"reason": "auth_required_false"})
        return

    api_key = get_api_key(request)
    if not api_key:
        logger.warning(
            "auth.missing_key",
            extra={"auth_required": True, "api_key_present": False},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing API key. Provide {settings.app.api_key_header} header.",
        )

    try:
        validate_api_key(api_key)
    except AuthenticationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc

    logger.debug(
        "auth.success",
        extra={"api_key_present": True, "api_key_hash": hash_identifier(api_key)},
    )
