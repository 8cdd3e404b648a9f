"""Tests for policy resolution and request identity extraction."""

from unittest.mock import patch

import pytest
from fastapi import Request

from subsidy_api.core.config import RateLimitSettings
from subsidy_api.core.rate_limit import (
    RATE_LIMIT_PRESETS,
    build_request_identity,
    client_ip,
    default_policy,
    rate_limit,
    resolve_policy,
)
from subsidy_api.services.rate_limiter import RateLimitPolicy, RateLimitScope


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = ("192.0.2.10", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/v1/applications",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_presets() -> None:
    assert RATE_LIMIT_PRESETS["auth"] == RateLimitPolicy(limit=5, window_seconds=60, scope=RateLimitScope.IP)
    assert RATE_LIMIT_PRESETS["generate"].scope is RateLimitScope.USER
    assert RATE_LIMIT_PRESETS["search"].limit == 10
    assert RATE_LIMIT_PRESETS["export"].limit == 2


class TestResolvePolicy:
    def test_decorator_wins_over_tags(self) -> None:
        policy = RateLimitPolicy(limit=3, window_seconds=30, scope=RateLimitScope.API_KEY)

        @rate_limit(policy)
        async def endpoint():
            return None

        assert resolve_policy(endpoint, ["export"]) is policy

    def test_decorator_accepts_preset_name(self) -> None:
        @rate_limit("auth")
        async def login():
            return None

        assert resolve_policy(login) == RATE_LIMIT_PRESETS["auth"]

    def test_unknown_preset_name(self) -> None:
        with pytest.raises(KeyError):
            rate_limit("burst")

    def test_first_matching_tag(self) -> None:
        async def endpoint():
            return None

        assert resolve_policy(endpoint, ["applications", "Search", "export"]) == RATE_LIMIT_PRESETS["search"]

    def test_falls_back_to_configured_default(self) -> None:
        async def endpoint():
            return None

        policy = resolve_policy(
            endpoint,
            ["applications"],
            rate_limit_settings=RateLimitSettings(default_limit=100, default_window_seconds=30),
        )

        assert policy == RateLimitPolicy(limit=100, window_seconds=30, scope=RateLimitScope.IP)

    def test_default_policy_from_settings(self) -> None:
        policy = default_policy(RateLimitSettings())

        assert (policy.limit, policy.window_seconds, policy.scope) == (60, 60, RateLimitScope.IP)


class TestClientIp:
    def test_first_forwarded_entry(self) -> None:
        request = _request({"X-Forwarded-For": " 203.0.113.5 , 10.0.0.1"})

        assert client_ip(request) == "203.0.113.5"

    def test_forwarded_for_can_be_ignored(self) -> None:
        request = _request({"X-Forwarded-For": "203.0.113.5"})

        assert client_ip(request, trust_forwarded_for=False) == "192.0.2.10"

    def test_peer_address(self) -> None:
        assert client_ip(_request()) == "192.0.2.10"

    def test_no_client(self) -> None:
        assert client_ip(_request(client=None)) is None


def test_build_request_identity() -> None:
    request = _request({"X-API-Key": "test-api-key-123", "X-User-ID": "user-9"})

    with patch("subsidy_api.core.rate_limit.settings") as mock_settings:
        mock_settings.rate_limit.trust_forwarded_for = True
        identity = build_request_identity(request, "/v1/applications")

    assert identity.client_ip == "192.0.2.10"
    assert identity.user_id == "user-9"
    assert identity.api_key == "test-api-key-123"
    assert identity.method == "POST"
    assert identity.route_template == "/v1/applications"
