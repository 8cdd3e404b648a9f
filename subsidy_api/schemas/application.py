"""Pydantic schemas for subsidy application drafts and their jobs."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class ApplicationStatus(str, Enum):
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    SUBMITTED = "submitted"


class OutputFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"


class TemplateType(str, Enum):
    STANDARD = "standard"
    DETAILED = "detailed"
    SUMMARY = "summary"


class ApplicationCreate(BaseModel):
    """Request body for creating an application draft."""

    title: str = Field(..., min_length=1, max_length=200, description="Application title.")
    locale: str = Field("ja", description="Locale of the draft content.")
    status: ApplicationStatus = Field(ApplicationStatus.DRAFT, description="Initial status.")


class ApplicationResponse(BaseModel):
    """An application draft as returned by the API."""

    id: str = Field(..., description="Server-generated application id.")
    owner_id: str = Field(..., description="User that created the draft ('anonymous' if unknown).")
    title: str
    locale: str
    status: ApplicationStatus
    created_at: datetime


class ApplicationSearchResponse(BaseModel):
    items: List[ApplicationResponse] = Field(default_factory=list)
    total: int = 0


class GenerateRequest(BaseModel):
    """Options for AI-assisted plan generation."""

    format: OutputFormat = OutputFormat.PDF
    template: TemplateType = TemplateType.STANDARD
    locale: str = "ja"
    include_signature: bool = False


class ExportRequest(BaseModel):
    format: OutputFormat = OutputFormat.PDF


class JobResponse(BaseModel):
    """Accepted asynchronous job (generation or export)."""

    job_id: str = Field(..., description="Server-generated job id.")
    application_id: str
    kind: str = Field(..., description="'generate' or 'export'.")
    status: str = Field("queued", description="queued | processing | completed | failed")
    format: OutputFormat
    created_at: datetime
