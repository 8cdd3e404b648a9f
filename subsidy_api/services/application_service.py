"""Application draft service backed by an in-memory repository.

Persistence proper (PostgreSQL) lives outside this service; the repository
here keeps drafts per app instance so the API surface can be exercised end
to end. Every mutating call creates state, which is what the admission layer
protects against duplicate execution.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone

from subsidy_api.core.errors import NotFoundAppError
from subsidy_api.schemas.application import (
    ApplicationCreate,
    ApplicationResponse,
    ExportRequest,
    GenerateRequest,
    JobResponse,
    OutputFormat,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationService:
    """CRUD and job intake for subsidy application drafts."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._applications: dict[str, ApplicationResponse] = {}
        self._jobs: dict[str, JobResponse] = {}

    def create(self, owner_id: str, payload: ApplicationCreate) -> ApplicationResponse:
        application = ApplicationResponse(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=payload.title,
            locale=payload.locale,
            status=payload.status,
            created_at=_utcnow(),
        )
        with self._lock:
            self._applications[application.id] = application

        logger.info(
            "application.created",
            extra={"application_id": application.id, "status": application.status.value},
        )
        return application

    def get(self, application_id: str) -> ApplicationResponse:
        """Return a draft.

        Raises:
            NotFoundAppError: If the id is unknown.
        """
        with self._lock:
            application = self._applications.get(application_id)
        if application is None:
            raise NotFoundAppError(
                code="application_not_found",
                message="Application not found",
                details={"resource_id": application_id},
            )
        return application

    def search(self, owner_id: str, query: str) -> list[ApplicationResponse]:
        needle = query.strip().lower()
        with self._lock:
            owned = [a for a in self._applications.values() if a.owner_id == owner_id]
        return [a for a in owned if needle in a.title.lower()]

    def enqueue_generation(self, application_id: str, options: GenerateRequest) -> JobResponse:
        return self._enqueue(application_id, kind="generate", output_format=options.format)

    def enqueue_export(self, application_id: str, options: ExportRequest) -> JobResponse:
        return self._enqueue(application_id, kind="export", output_format=options.format)

    def job_count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _enqueue(self, application_id: str, *, kind: str, output_format: OutputFormat) -> JobResponse:
        self.get(application_id)
        job = JobResponse(
            job_id=str(uuid.uuid4()),
            application_id=application_id,
            kind=kind,
            format=output_format,
            created_at=_utcnow(),
        )
        with self._lock:
            self._jobs[job.job_id] = job

        logger.info(
            "application.job_enqueued",
            extra={"application_id": application_id, "job_id": job.job_id, "kind": kind},
        )
        return job
