from fastapi import APIRouter, Depends, Query, Request, status

from subsidy_api.core.admission import AdmissionRoute
from subsidy_api.core.auth import ANONYMOUS_USER, current_user_id
from subsidy_api.schemas.application import (
    ApplicationCreate,
    ApplicationResponse,
    ApplicationSearchResponse,
    ExportRequest,
    GenerateRequest,
    JobResponse,
)
from subsidy_api.services.application_service import ApplicationService

# Every route below passes through rate limiting, API key auth and idempotency
# admission. The policy comes from the first route tag that names a preset.
router = APIRouter(
    prefix="/applications",
    tags=["applications"],
    route_class=AdmissionRoute,
)


def get_application_service(request: Request) -> ApplicationService:
    return request.app.state.applications


@router.post(
    "",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_application(
    payload: ApplicationCreate,
    request: Request,
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationResponse:
    """Create a subsidy application draft.

    Retries with the same ``Idempotency-Key`` return the original 201 body
    (including the same id) instead of creating a second draft.
    """
    return service.create(current_user_id(request) or ANONYMOUS_USER, payload)


@router.get(
    "/search",
    response_model=ApplicationSearchResponse,
    tags=["search"],
)
async def search_applications(
    request: Request,
    q: str = Query("", max_length=200, description="Case-insensitive title filter."),
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationSearchResponse:
    items = service.search(current_user_id(request) or ANONYMOUS_USER, q)
    return ApplicationSearchResponse(items=items, total=len(items))


@router.get("/{application_id}", response_model=ApplicationResponse)
async def get_application(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
) -> ApplicationResponse:
    return service.get(application_id)


@router.post(
    "/{application_id}/generate",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["generate"],
)
async def generate_application(
    application_id: str,
    options: GenerateRequest,
    service: ApplicationService = Depends(get_application_service),
) -> JobResponse:
    """Queue AI-assisted generation of the business plan for a draft."""
    return service.enqueue_generation(application_id, options)


@router.post(
    "/{application_id}/export",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["export"],
)
async def export_application(
    application_id: str,
    options: ExportRequest,
    service: ApplicationService = Depends(get_application_service),
) -> JobResponse:
    """Queue a PDF/DOCX export of a draft."""
    return service.enqueue_export(application_id, options)
