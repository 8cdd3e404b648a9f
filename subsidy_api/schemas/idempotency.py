"""Schemas for captured responses and the records persisted for replay."""

from __future__ import annotations

import base64
from datetime import datetime

from pydantic import BaseModel, Field


class CapturedResponse(BaseModel):
    """Structured result of a business handler: status, headers and raw body."""

    status_code: int
    headers: list[tuple[str, str]] = Field(default_factory=list)
    body: bytes = b""


class IdempotencyRecord(BaseModel):
    """A completed response stored under an idempotency cache key.

    The body is kept base64-encoded so arbitrary bytes survive the JSON
    round trip through the store unchanged.
    """

    status_code: int
    headers: list[tuple[str, str]]
    body_b64: str
    fingerprint: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_response(
        cls,
        response: CapturedResponse,
        *,
        fingerprint: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> "IdempotencyRecord":
        return cls(
            status_code=response.status_code,
            headers=response.headers,
            body_b64=base64.b64encode(response.body).decode("ascii"),
            fingerprint=fingerprint,
            created_at=created_at,
            expires_at=expires_at,
        )

    def to_response(self) -> CapturedResponse:
        return CapturedResponse(
            status_code=self.status_code,
            headers=list(self.headers),
            body=base64.b64decode(self.body_b64),
        )
