"""Fixed-window rate limiting on top of the shared key-value store.

A window opens with the first request for a key and lasts ``window_seconds``;
every evaluated request (admitted or not) increments the counter through the
store's atomic increment, and a request is admitted while the post-increment
count stays within the limit.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from subsidy_api.adapters.store.base import (
    AbstractKeyValueStore,
    CounterSnapshot,
    StoreUnavailableError,
)
from subsidy_api.core.auth import ANONYMOUS_USER
from subsidy_api.core.logging import hash_identifier

logger = logging.getLogger(__name__)

NO_API_KEY = "no-key"
UNKNOWN_IP = "unknown"


class RateLimitScope(str, Enum):
    """Dimension a quota bucket is keyed on."""

    GLOBAL = "global"
    IP = "ip"
    USER = "user"
    API_KEY = "api-key"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Quota attached to a route.

    Attributes:
        limit: Maximum requests admitted per window.
        window_seconds: Window length in seconds.
        scope: Bucket dimension.
        include_endpoint: Count each method + route template separately.
    """

    limit: int
    window_seconds: int
    scope: RateLimitScope = RateLimitScope.IP
    include_endpoint: bool = False

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")


@dataclass(frozen=True)
class RequestIdentity:
    """Everything a key can be derived from, extracted from one request."""

    client_ip: str | None = None
    user_id: str | None = None
    api_key: str | None = None
    method: str = "GET"
    route_template: str = "/"


@dataclass(frozen=True)
class RateLimitKey:
    """Identity of a quota bucket."""

    scope: RateLimitScope
    scope_value: str | None = None
    endpoint: str | None = None

    def render(self, prefix: str = "ratelimit") -> str:
        parts = [prefix, self.scope.value]
        if self.scope_value is not None:
            parts.append(self.scope_value)
        if self.endpoint is not None:
            parts.append(self.endpoint)
        return ":".join(parts)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of evaluating one request against a policy.

    Attributes:
        allowed: Whether the request is admitted.
        limit: Max requests per window.
        remaining: ``max(0, limit - count)`` after this request.
        reset_at: UNIX epoch seconds when the window closes.
        retry_after_seconds: Seconds until ``reset_at`` when blocked.
        scope: Scope of the bucket that was charged.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int | None
    scope: RateLimitScope

    @property
    def reset_at_iso(self) -> str:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat()

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at_iso,
        }


def build_rate_limit_key(policy: RateLimitPolicy, identity: RequestIdentity) -> RateLimitKey:
    """Derive the bucket a request is counted in.

    Args:
        policy: Policy of the matched route.
        identity: Request attributes.

    Returns:
        RateLimitKey: Same key iff the requests share a quota bucket.

    Examples:
        >>> policy = RateLimitPolicy(limit=5, window_seconds=60, scope=RateLimitScope.USER)
        >>> build_rate_limit_key(policy, RequestIdentity()).render()
        'ratelimit:user:anonymous'
    """
    if policy.scope is RateLimitScope.GLOBAL:
        scope_value = None
    elif policy.scope is RateLimitScope.IP:
        scope_value = identity.client_ip or UNKNOWN_IP
    elif policy.scope is RateLimitScope.USER:
        scope_value = identity.user_id or ANONYMOUS_USER
    else:
        scope_value = identity.api_key or NO_API_KEY

    endpoint = None
    if policy.include_endpoint:
        endpoint = f"{identity.method.upper()}:{identity.route_template}"

    return RateLimitKey(scope=policy.scope, scope_value=scope_value, endpoint=endpoint)


class RateLimiter:
    """Evaluates requests against policies using a shared counter store."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        fail_open: bool = True,
        key_prefix: str = "ratelimit",
    ) -> None:
        self._store = store
        self._fail_open = fail_open
        self._key_prefix = key_prefix

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    async def check_and_record(self, key: str, window_seconds: int) -> CounterSnapshot:
        """Count one hit for ``key`` and return the post-increment snapshot.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        return await self._store.increment(key, window_seconds)

    async def evaluate(
        self,
        policy: RateLimitPolicy,
        identity: RequestIdentity,
    ) -> RateLimitDecision | None:
        """Charge the request to its bucket and decide admission.

        Returns:
            The decision, or None when the store is unreachable and the
            limiter fails open.

        Raises:
            StoreUnavailableError: If the store is unreachable and the limiter
                fails closed.
        """
        key = build_rate_limit_key(policy, identity).render(self._key_prefix)

        try:
            snapshot = await self.check_and_record(key, policy.window_seconds)
        except StoreUnavailableError as exc:
            logger.warning(
                "rate_limit.store_unavailable",
                extra={
                    "key_hash": hash_identifier(key),
                    "scope": policy.scope.value,
                    "fail_open": self._fail_open,
                    "error_msg": str(exc),
                },
            )
            if self._fail_open:
                return None
            raise

        allowed = snapshot.count <= policy.limit
        decision = RateLimitDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=max(0, policy.limit - snapshot.count),
            reset_at=snapshot.reset_at,
            retry_after_seconds=None if allowed else max(0, math.ceil(snapshot.ttl_seconds)),
            scope=policy.scope,
        )

        log_extra = {
            "scope": policy.scope.value,
            "key_hash": hash_identifier(key),
            "limit": decision.limit,
            "remaining": decision.remaining,
            "window_s": policy.window_seconds,
        }
        if allowed:
            logger.debug("rate_limit.allowed", extra=log_extra)
        else:
            logger.warning(
                "rate_limit.exceeded",
                extra={**log_extra, "retry_after_s": decision.retry_after_seconds},
            )
        return decision
