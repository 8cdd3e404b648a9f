"""Unit tests for idempotency key handling and the coordinator."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from subsidy_api.adapters.store.base import StoreUnavailableError
from subsidy_api.adapters.store.in_memory import InMemoryKeyValueStore
from subsidy_api.core.errors import (
    IdempotencyConflictAppError,
    IdempotencyKeyReuseAppError,
    StoreUnavailableAppError,
    ValidationAppError,
)
from subsidy_api.schemas.idempotency import CapturedResponse
from subsidy_api.services.idempotency_service import (
    IdempotencyCoordinator,
    applies_to,
    extract_token,
    request_fingerprint,
    validate_format,
)

TOKEN = "abc12345-retry"
PATH = "/v1/applications"
BODY = b'{"title":"IT\xe5\xb0\x8e\xe5\x85\xa5\xe8\xa3\x9c\xe5\x8a\xa9\xe9\x87\x91"}'


class CountingHandler:
    """Handler double that records how often it ran."""

    def __init__(self, status_code: int = 201, body: bytes = b'{"id":"app-1"}') -> None:
        self.calls = 0
        self.status_code = status_code
        self.body = body

    async def __call__(self) -> CapturedResponse:
        self.calls += 1
        return CapturedResponse(
            status_code=self.status_code,
            headers=[("content-type", "application/json")],
            body=self.body,
        )


@pytest.fixture
def coordinator(store: InMemoryKeyValueStore, clock) -> IdempotencyCoordinator:
    return IdempotencyCoordinator(store, response_ttl_seconds=86400, lock_ttl_seconds=30, clock=clock)


async def _execute(coordinator: IdempotencyCoordinator, handler, *, token: str = TOKEN, user_id="user-1", body=BODY):
    return await coordinator.execute(
        token=token,
        user_id=user_id,
        method="POST",
        path=PATH,
        body=body,
        handler=handler,
    )


class TestTokenHelpers:
    def test_extract_prefers_idempotency_key(self) -> None:
        headers = {"Idempotency-Key": "primary-123", "X-Idempotency-Key": "fallback-123"}

        assert extract_token(headers) == "primary-123"

    def test_extract_falls_back_to_x_header(self) -> None:
        assert extract_token({"X-Idempotency-Key": "fallback-123"}) == "fallback-123"

    def test_extract_missing(self) -> None:
        assert extract_token({}) is None

    @pytest.mark.parametrize(
        ("token", "valid"),
        [
            ("abcdefgh", True),
            ("A" * 128, True),
            ("550e8400-e29b-41d4-a716-446655440000", True),
            ("snake_case_key", True),
            ("abcdefg", False),
            ("A" * 129, False),
            ("has space1", False),
            ("key.with.dots", False),
            ("キー12345678", False),
        ],
    )
    def test_validate_format(self, token: str, valid: bool) -> None:
        assert validate_format(token) is valid

    @pytest.mark.parametrize(
        ("method", "expected"),
        [("POST", True), ("put", True), ("PATCH", True), ("DELETE", True), ("GET", False), ("HEAD", False), ("OPTIONS", False)],
    )
    def test_applies_to(self, method: str, expected: bool) -> None:
        assert applies_to(method) is expected

    def test_fingerprint_depends_on_body(self) -> None:
        assert request_fingerprint("POST", PATH, b"a") != request_fingerprint("POST", PATH, b"b")
        assert request_fingerprint("post", PATH, b"a") == request_fingerprint("POST", PATH, b"a")


class TestComputeKey:
    def test_namespaced_by_user(self, coordinator: IdempotencyCoordinator) -> None:
        key_a = coordinator.compute_key("user-a", PATH, TOKEN)
        key_b = coordinator.compute_key("user-b", PATH, TOKEN)

        assert key_a.startswith("idempotency:user-a:")
        assert key_a != key_b

    def test_anonymous_and_path(self, coordinator: IdempotencyCoordinator) -> None:
        key = coordinator.compute_key(None, PATH, TOKEN)

        assert key.startswith("idempotency:anonymous:")
        assert TOKEN not in key
        assert key != coordinator.compute_key(None, "/v1/applications/app-1/export", TOKEN)

    def test_lock_key(self, coordinator: IdempotencyCoordinator) -> None:
        assert coordinator.lock_key("idempotency:u:abc") == "idempotency:u:abc:lock"


class TestExecute:
    @pytest.mark.asyncio
    async def test_first_request_runs_and_second_replays(self, coordinator: IdempotencyCoordinator) -> None:
        handler = CountingHandler()

        first = await _execute(coordinator, handler)
        second = await _execute(coordinator, handler)

        assert handler.calls == 1
        assert first.replayed is False
        assert second.replayed is True
        assert second.response == first.response

    @pytest.mark.asyncio
    async def test_lock_is_released_after_success(self, coordinator: IdempotencyCoordinator, store) -> None:
        await _execute(coordinator, CountingHandler())

        cache_key = coordinator.compute_key("user-1", PATH, TOKEN)
        assert await store.get(coordinator.lock_key(cache_key)) is None
        assert await store.get(cache_key) is not None

    @pytest.mark.asyncio
    async def test_error_responses_are_replayed(self, coordinator: IdempotencyCoordinator) -> None:
        handler = CountingHandler(status_code=404, body=b'{"error":{"code":"application_not_found"}}')

        await _execute(coordinator, handler)
        replay = await _execute(coordinator, handler)

        assert handler.calls == 1
        assert replay.response.status_code == 404

    @pytest.mark.asyncio
    async def test_different_users_do_not_share_records(self, coordinator: IdempotencyCoordinator) -> None:
        handler = CountingHandler()

        await _execute(coordinator, handler, user_id="user-1")
        result = await _execute(coordinator, handler, user_id="user-2")

        assert handler.calls == 2
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_gets_conflict(self, coordinator: IdempotencyCoordinator) -> None:
        started = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def slow_handler() -> CapturedResponse:
            nonlocal calls
            calls += 1
            started.set()
            await release.wait()
            return CapturedResponse(status_code=201, body=b"{}")

        first = asyncio.create_task(_execute(coordinator, slow_handler))
        await started.wait()

        with pytest.raises(IdempotencyConflictAppError) as exc_info:
            await _execute(coordinator, slow_handler)

        release.set()
        result = await first

        assert calls == 1
        assert result.replayed is False
        assert exc_info.value.code == "idempotency_request_in_progress"
        assert exc_info.value.message == "Request is being processed"

    @pytest.mark.asyncio
    async def test_gathered_duplicates_run_handler_once(self, coordinator: IdempotencyCoordinator) -> None:
        handler = CountingHandler()

        results = await asyncio.gather(
            _execute(coordinator, handler),
            _execute(coordinator, handler),
            return_exceptions=True,
        )

        assert handler.calls == 1
        for result in results:
            if isinstance(result, Exception):
                assert isinstance(result, IdempotencyConflictAppError)
            else:
                assert result.response.status_code == 201

    @pytest.mark.asyncio
    async def test_expired_record_runs_again(self, coordinator: IdempotencyCoordinator, clock) -> None:
        handler = CountingHandler()

        await _execute(coordinator, handler)
        clock.advance(86400)
        result = await _execute(coordinator, handler)

        assert handler.calls == 2
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_stale_lock_expires(self, coordinator: IdempotencyCoordinator, store, clock) -> None:
        cache_key = coordinator.compute_key("user-1", PATH, TOKEN)
        # Simulates a worker that crashed while holding the lock.
        await store.set_if_absent(coordinator.lock_key(cache_key), "1", ttl_seconds=30)

        with pytest.raises(IdempotencyConflictAppError):
            await _execute(coordinator, CountingHandler())

        clock.advance(30)
        result = await _execute(coordinator, CountingHandler())
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_malformed_token_creates_no_state(self, coordinator: IdempotencyCoordinator, store) -> None:
        handler = CountingHandler()

        with pytest.raises(ValidationAppError) as exc_info:
            await _execute(coordinator, handler, token="short")

        assert exc_info.value.code == "invalid_idempotency_key"
        assert handler.calls == 0
        assert store.size() == 0

    @pytest.mark.asyncio
    async def test_token_reused_with_different_body(self, coordinator: IdempotencyCoordinator) -> None:
        handler = CountingHandler()

        await _execute(coordinator, handler, body=b'{"title":"A"}')
        with pytest.raises(IdempotencyKeyReuseAppError) as exc_info:
            await _execute(coordinator, handler, body=b'{"title":"B"}')

        assert exc_info.value.code == "idempotency_key_reused"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_handler_exception_releases_lock(self, coordinator: IdempotencyCoordinator, store) -> None:
        async def broken_handler() -> CapturedResponse:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await _execute(coordinator, broken_handler)

        cache_key = coordinator.compute_key("user-1", PATH, TOKEN)
        assert await store.get(coordinator.lock_key(cache_key)) is None
        assert await store.get(cache_key) is None

        # A retry with the same token is allowed to run.
        result = await _execute(coordinator, CountingHandler())
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_cancelled_handler_leaves_lock_to_expire(self, coordinator: IdempotencyCoordinator, store) -> None:
        started = asyncio.Event()

        async def hanging_handler() -> CapturedResponse:
            started.set()
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

        task = asyncio.create_task(_execute(coordinator, hanging_handler))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        cache_key = coordinator.compute_key("user-1", PATH, TOKEN)
        assert await store.get(coordinator.lock_key(cache_key)) is not None

    @pytest.mark.asyncio
    async def test_corrupt_record_is_ignored(self, coordinator: IdempotencyCoordinator, store) -> None:
        cache_key = coordinator.compute_key("user-1", PATH, TOKEN)
        await store.set(cache_key, "not json", ttl_seconds=60)

        handler = CountingHandler()
        result = await _execute(coordinator, handler)

        assert handler.calls == 1
        assert result.replayed is False


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_unavailable_store_fails_closed(self) -> None:
        store = AsyncMock(spec=InMemoryKeyValueStore)
        store.get.side_effect = StoreUnavailableError("down")
        coordinator = IdempotencyCoordinator(store)
        handler = CountingHandler()

        with pytest.raises(StoreUnavailableAppError) as exc_info:
            await _execute(coordinator, handler)

        assert exc_info.value.code == "idempotency_store_unavailable"
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_persist_failure_still_returns_response(self, caplog) -> None:
        store = AsyncMock(spec=InMemoryKeyValueStore)
        store.get.return_value = None
        store.set_if_absent.return_value = True
        store.set.side_effect = StoreUnavailableError("down")
        coordinator = IdempotencyCoordinator(store)
        handler = CountingHandler()

        with caplog.at_level("ERROR"):
            result = await _execute(coordinator, handler)

        assert result.response.status_code == 201
        assert result.replayed is False
        store.delete.assert_awaited_once()
        assert any(r.getMessage() == "idempotency.persist_failed" for r in caplog.records)


@pytest.mark.parametrize("kwargs", [{"response_ttl_seconds": 0}, {"lock_ttl_seconds": 0}])
def test_invalid_ttls(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        IdempotencyCoordinator(InMemoryKeyValueStore(), **kwargs)
