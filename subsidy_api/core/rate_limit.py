"""Rate limit policies and the HTTP-side helpers that feed the limiter.

Policies are configuration data: a preset table keyed by route tag, an
explicit per-endpoint override via the ``rate_limit`` decorator, and the
``default`` preset for everything else.

Usage:
    @router.post("/applications/{application_id}/generate", tags=["generate"])
    async def generate(...): ...

    @router.post("/reports")
    @rate_limit(RateLimitPolicy(limit=3, window_seconds=60, scope=RateLimitScope.USER))
    async def create_report(...): ...
"""

from __future__ import annotations

from typing import Callable, Iterable, TypeVar

from fastapi import Request

from subsidy_api.core.auth import current_user_id, get_api_key
from subsidy_api.core.config import RateLimitSettings, settings
from subsidy_api.services.rate_limiter import RateLimitPolicy, RateLimitScope, RequestIdentity

_POLICY_ATTR = "__rate_limit_policy__"

F = TypeVar("F", bound=Callable)

RATE_LIMIT_PRESETS: dict[str, RateLimitPolicy] = {
    "default": RateLimitPolicy(limit=60, window_seconds=60, scope=RateLimitScope.IP),
    "auth": RateLimitPolicy(limit=5, window_seconds=60, scope=RateLimitScope.IP),
    "generate": RateLimitPolicy(limit=5, window_seconds=60, scope=RateLimitScope.USER),
    "search": RateLimitPolicy(limit=10, window_seconds=60, scope=RateLimitScope.USER),
    "export": RateLimitPolicy(limit=2, window_seconds=60, scope=RateLimitScope.USER),
}


def rate_limit(policy: RateLimitPolicy | str) -> Callable[[F], F]:
    """Attach a policy (or a preset name) to an endpoint function.

    Must sit below the router decorator so the policy is set before the
    route is registered.

    Raises:
        KeyError: If a preset name is unknown.
    """
    resolved = RATE_LIMIT_PRESETS[policy] if isinstance(policy, str) else policy

    def decorator(endpoint: F) -> F:
        setattr(endpoint, _POLICY_ATTR, resolved)
        return endpoint

    return decorator


def default_policy(rate_limit_settings: RateLimitSettings | None = None) -> RateLimitPolicy:
    """The ``default`` preset with limit/window taken from settings."""
    cfg = rate_limit_settings or settings.rate_limit
    preset = RATE_LIMIT_PRESETS["default"]
    return RateLimitPolicy(
        limit=cfg.default_limit,
        window_seconds=cfg.default_window_seconds,
        scope=preset.scope,
        include_endpoint=preset.include_endpoint,
    )


def resolve_policy(
    endpoint: Callable,
    tags: Iterable[str] | None = None,
    *,
    rate_limit_settings: RateLimitSettings | None = None,
) -> RateLimitPolicy:
    """Pick the policy for a route.

    Order: explicit ``rate_limit`` decorator, first tag naming a preset,
    then the configurable default.
    """
    explicit = getattr(endpoint, _POLICY_ATTR, None)
    if explicit is not None:
        return explicit

    for tag in tags or ():
        name = str(tag).lower()
        if name != "default" and name in RATE_LIMIT_PRESETS:
            return RATE_LIMIT_PRESETS[name]

    return default_policy(rate_limit_settings)


def client_ip(request: Request, *, trust_forwarded_for: bool = True) -> str | None:
    """Resolve the caller IP.

    First entry of ``X-Forwarded-For`` when trusted and present, otherwise
    the socket peer address.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    return request.client.host if request.client else None


def build_request_identity(request: Request, route_template: str) -> RequestIdentity:
    """Collect the request attributes rate limit keys are derived from."""
    return RequestIdentity(
        client_ip=client_ip(request, trust_forwarded_for=settings.rate_limit.trust_forwarded_for),
        user_id=current_user_id(request),
        api_key=get_api_key(request),
        method=request.method,
        route_template=route_template,
    )
