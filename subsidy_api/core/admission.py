"""Request admission for API routes: rate limiting, then idempotency.

Routers opt in with ``APIRouter(route_class=AdmissionRoute)``. For every
request the route:

1. charges the route's rate limit policy (429 when exceeded),
   then checks the API key (403),
2. for POST/PUT/PATCH/DELETE carrying an idempotency key, runs the endpoint
   through the ``IdempotencyCoordinator`` (replay, 409, or a single execution),
3. attaches the ``X-RateLimit-*`` headers to whatever response goes out.

The limiter and coordinator are built by the app factory around one shared
store and kept on ``app.state.admission``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Coroutine

from fastapi import Request, Response
from fastapi.routing import APIRoute

from subsidy_api.adapters.store.base import StoreUnavailableError
from subsidy_api.core.auth import current_user_id, verify_api_key
from subsidy_api.core.config import Settings, settings
from subsidy_api.core.errors import RateLimitAppError, StoreUnavailableAppError
from subsidy_api.core.exception_handlers import HANDLED_ERROR_TYPES, render_handled_error
from subsidy_api.core.rate_limit import build_request_identity, resolve_policy
from subsidy_api.schemas.idempotency import CapturedResponse
from subsidy_api.services.idempotency_service import (
    IdempotencyCoordinator,
    applies_to,
    extract_token,
)
from subsidy_api.services.rate_limiter import RateLimitDecision, RateLimiter, RateLimitPolicy

logger = logging.getLogger(__name__)

RouteHandler = Callable[[Request], Coroutine[Any, Any, Response]]

REPLAY_HEADER = "Idempotent-Replayed"


class AdmissionGate:
    """Holds the admission components for one application instance."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyCoordinator,
        *,
        app_settings: Settings | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency
        self._settings = app_settings or settings

    async def admit(self, request: Request, policy: RateLimitPolicy, route_template: str) -> RateLimitDecision | None:
        """Charge the request against ``policy``.

        Returns:
            The decision for an admitted request, or None when rate limiting
            is disabled or the store failed open.

        Raises:
            RateLimitAppError: Quota exceeded.
            StoreUnavailableAppError: Store unreachable and failing closed.
        """
        if not self._settings.rate_limit.enabled:
            return None

        identity = build_request_identity(request, route_template)
        try:
            decision = await self.rate_limiter.evaluate(policy, identity)
        except StoreUnavailableError as exc:
            raise StoreUnavailableAppError(
                code="rate_limit_store_unavailable",
                message="Rate limit store is unavailable. Retry the request later.",
            ) from exc

        if decision is None or decision.allowed:
            return decision

        raise RateLimitAppError(
            code="rate_limit_exceeded",
            message="Rate limit exceeded. Try again later.",
            details={
                "retry_after": decision.retry_after_seconds or 0,
                "limit": decision.limit,
                "remaining": decision.remaining,
                "reset_at": decision.reset_at_iso,
                "scope": decision.scope.value,
            },
        )

    async def dispatch(self, request: Request, call_endpoint: RouteHandler) -> Response:
        """Run the endpoint, deduplicating it when the request carries a key."""
        if not self._settings.idempotency.enabled or not applies_to(request.method):
            return await call_endpoint(request)

        token = extract_token(request.headers)
        if token is None:
            return await call_endpoint(request)

        body = await request.body()
        produced: list[Response] = []

        async def handler() -> CapturedResponse:
            try:
                response = await call_endpoint(request)
            except HANDLED_ERROR_TYPES as exc:
                response = await render_handled_error(request, exc)
            produced.append(response)
            return await capture_response(response)

        result = await self.idempotency.execute(
            token=token,
            user_id=current_user_id(request),
            method=request.method,
            path=request.url.path,
            body=body,
            handler=handler,
        )

        response = build_response(result.response)
        if result.replayed:
            response.headers[REPLAY_HEADER] = "true"
        elif produced:
            # Background tasks belong to the execution, never to a replay.
            response.background = produced[0].background
        return response

    def decorate(self, response: Response, decision: RateLimitDecision | None) -> Response:
        """Attach quota headers for an evaluated request."""
        if decision is not None and self._settings.rate_limit.include_headers:
            response.headers.update(decision.headers())
        return response


async def capture_response(response: Response) -> CapturedResponse:
    """Read status, headers and body out of a response before it is sent."""
    body_iterator = getattr(response, "body_iterator", None)
    if body_iterator is not None:
        chunks = []
        async for chunk in body_iterator:
            chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode(getattr(response, "charset", "utf-8")))
        body = b"".join(chunks)
        headers = [
            (k.decode("latin-1"), v.decode("latin-1"))
            for k, v in response.raw_headers
            if k.lower() != b"content-length"
        ]
        headers.append(("content-length", str(len(body))))
    else:
        body = bytes(response.body)
        headers = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in response.raw_headers]

    return CapturedResponse(status_code=response.status_code, headers=headers, body=body)


def build_response(captured: CapturedResponse) -> Response:
    """Turn a captured response back into one with identical status, headers and body."""
    response = Response(content=captured.body, status_code=captured.status_code)
    response.raw_headers = [(k.encode("latin-1"), v.encode("latin-1")) for k, v in captured.headers]
    return response


class AdmissionRoute(APIRoute):
    """APIRoute that puts every request through the admission gate."""

    def __init__(self, path: str, endpoint: Callable[..., Any], **kwargs: Any) -> None:
        super().__init__(path, endpoint, **kwargs)
        self.rate_limit_policy = resolve_policy(endpoint, self.tags)

    def get_route_handler(self) -> RouteHandler:
        call_endpoint = super().get_route_handler()

        async def admission_route_handler(request: Request) -> Response:
            gate: AdmissionGate = request.app.state.admission
            decision = await gate.admit(request, self.rate_limit_policy, self.path_format)
            try:
                # Auth runs outside the idempotent handler; its 403 is never cached.
                await verify_api_key(request)
                response = await gate.dispatch(request, call_endpoint)
            except HANDLED_ERROR_TYPES as exc:
                response = await render_handled_error(request, exc)
            return gate.decorate(response, decision)

        return admission_route_handler
