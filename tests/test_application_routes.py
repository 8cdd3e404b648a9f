"""Integration tests for the application draft endpoints."""

from fastapi.testclient import TestClient


def test_create_and_get(client: TestClient, api_headers: dict) -> None:
    created = client.post(
        "/v1/applications",
        json={"title": "事業再構築補助金", "status": "draft"},
        headers={**api_headers, "X-User-ID": "user-1"},
    )

    assert created.status_code == 201
    body = created.json()
    assert body["owner_id"] == "user-1"
    assert body["locale"] == "ja"

    fetched = client.get(f"/v1/applications/{body['id']}", headers=api_headers)
    assert fetched.status_code == 200
    assert fetched.json() == body


def test_search_is_scoped_to_owner(client: TestClient, api_headers: dict) -> None:
    client.post("/v1/applications", json={"title": "IT導入補助金"}, headers={**api_headers, "X-User-ID": "user-1"})
    client.post("/v1/applications", json={"title": "IT導入補助金 (別)"}, headers={**api_headers, "X-User-ID": "user-2"})

    response = client.get("/v1/applications/search", params={"q": "it導入"}, headers={**api_headers, "X-User-ID": "user-1"})

    assert response.status_code == 200
    assert response.json()["total"] == 1


def test_export_queues_job(client: TestClient, api_headers: dict, app) -> None:
    app_id = client.post("/v1/applications", json={"title": "a"}, headers=api_headers).json()["id"]

    response = client.post(f"/v1/applications/{app_id}/export", json={"format": "docx"}, headers=api_headers)

    assert response.status_code == 202
    assert response.json()["format"] == "docx"
    assert response.json()["status"] == "queued"
    assert app.state.applications.job_count() == 1


def test_invalid_body_returns_422(client: TestClient, api_headers: dict) -> None:
    response = client.post("/v1/applications", json={"title": ""}, headers=api_headers)

    assert response.status_code == 422


def test_openapi_documents_idempotency_header(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    create_op = schema["paths"]["/v1/applications"]["post"]
    assert any(p["name"] == "Idempotency-Key" for p in create_op["parameters"])
    assert schema["paths"]["/health"]["get"]["security"] == []
    assert "ApiKeyAuth" in schema["components"]["securitySchemes"]
    assert {"search", "generate", "export"} <= {t["name"] for t in schema["tags"]}
