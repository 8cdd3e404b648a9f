"""OpenAPI metadata and customization utilities.

Provides a helper to enrich the generated OpenAPI schema with:
- Tags metadata
- API Key security scheme (``X-API-Key``) with health endpoints exempt
- The optional ``Idempotency-Key`` header on every mutating operation

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from subsidy_api.core.config import settings

_MUTATING_METHODS = {"post", "put", "patch", "delete"}

_IDEMPOTENCY_PARAMETER = {
    "name": "Idempotency-Key",
    "in": "header",
    "required": False,
    "description": (
        "Client token (8-128 chars of A-Z a-z 0-9 _ -) making the request safe to retry. "
        "X-Idempotency-Key is accepted as a fallback."
    ),
    "schema": {"type": "string", "pattern": "^[A-Za-z0-9_-]{8,128}$"},
}


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and security.

    - Injects components.securitySchemes for API Key auth
    - Marks all operations as requiring API Key by default, then exempts health
      endpoints by setting ``security: []``
    - Documents ``Idempotency-Key`` on POST/PUT/PATCH/DELETE operations
    - Adds tags metadata if not present
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": settings.app.api_key_header,
                "description": f"Provide your API key via the {settings.app.api_key_header} header.",
            },
        )
        schema.setdefault("security", [{"ApiKeyAuth": []}])

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {"name": "applications", "description": "Subsidy application drafts (default rate limit)."},
            {"name": "search", "description": "Search endpoints (10 requests/minute per user)."},
            {"name": "generate", "description": "AI-assisted generation (5 requests/minute per user)."},
            {"name": "export", "description": "Document export (2 requests/minute per user)."},
            {"name": "Health", "description": "Liveness and readiness checks."},
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            for method, operation in methods.items():
                if not isinstance(operation, dict):
                    continue
                if "/health" in path:
                    operation["security"] = []
                    continue
                if method.lower() in _MUTATING_METHODS:
                    parameters = operation.setdefault("parameters", [])
                    if not any(p.get("name") == "Idempotency-Key" for p in parameters):
                        parameters.append(dict(_IDEMPOTENCY_PARAMETER))

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
