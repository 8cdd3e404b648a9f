from __future__ import annotations

from fastapi.testclient import TestClient


def test_preserves_incoming_request_id_header(client: TestClient):
    incoming_id = "test-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": incoming_id})

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == incoming_id


def test_generates_request_id_when_missing(client: TestClient):
    resp = client.get("/health")

    assert resp.status_code == 200
    generated = resp.headers.get("X-Request-ID")
    assert generated
    assert isinstance(generated, str)

    duration = resp.headers.get("X-Request-Duration-ms")
    assert duration is not None


def test_error_body_carries_request_id(client: TestClient):
    resp = client.get(
        "/v1/applications/missing",
        headers={"X-API-Key": "test-api-key-123", "X-Request-ID": "req-404"},
    )

    assert resp.status_code == 404
    assert resp.json()["error"]["request_id"] == "req-404"


def test_replayed_response_gets_fresh_request_id(client: TestClient, api_headers: dict):
    headers = {**api_headers, "Idempotency-Key": "request-id-0001"}

    client.post("/v1/applications", json={"title": "a"}, headers={**headers, "X-Request-ID": "req-1"})
    replay = client.post("/v1/applications", json={"title": "a"}, headers={**headers, "X-Request-ID": "req-2"})

    assert replay.headers["Idempotent-Replayed"] == "true"
    assert replay.headers["X-Request-ID"] == "req-2"
