"""
Job application routes.
Public submission per property; reviewers triage, approve with an offer, or reject.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from ...core.dependencies import require_feature, require_reviewer
from ...core.models.auth import CurrentUser
from ..dependencies import get_job_application_service
from ..models.job_application import (
    ApplicationApproveResponse,
    ApplicationNotesRequest,
    ApplicationStatus,
    ApplicationSubmitResponse,
    JobApplication,
    JobApplicationCreate,
    JobApplicationListResponse,
    JobOffer,
)
from ..services.errors import OnboardingError
from ..services.job_applications import JobApplicationService
from .errors import to_http_exception

router = APIRouter()


@router.post("/public/{organization_id}", response_model=ApplicationSubmitResponse)
async def submit_job_application(
    organization_id: UUID,
    request: JobApplicationCreate,
    service: JobApplicationService = Depends(get_job_application_service),
):
    try:
        application = await service.submit_application(organization_id, request)
    except OnboardingError as e:
        raise to_http_exception(e)
    return ApplicationSubmitResponse(
        success=True,
        message="Thanks for applying! The hiring manager will be in touch.",
        application_id=application.id,
    )


@router.get("", response_model=JobApplicationListResponse)
async def list_job_applications(
    status: Optional[ApplicationStatus] = None,
    current_user: CurrentUser = Depends(require_reviewer),
    service: JobApplicationService = Depends(get_job_application_service),
):
    applications = await service.list_applications(current_user, status)
    return JobApplicationListResponse(applications=applications, total=len(applications))


@router.post("/{application_id}/review", response_model=JobApplication)
async def mark_job_application_reviewed(
    application_id: UUID,
    request: ApplicationNotesRequest,
    current_user: CurrentUser = Depends(require_reviewer),
    service: JobApplicationService = Depends(get_job_application_service),
):
    try:
        return await service.mark_reviewed(application_id, current_user, request.notes)
    except OnboardingError as e:
        raise to_http_exception(e)


@router.post("/{application_id}/approve", response_model=ApplicationApproveResponse)
async def approve_job_application(
    application_id: UUID,
    offer: JobOffer,
    current_user: CurrentUser = Depends(require_feature("remote_onboarding")),
    service: JobApplicationService = Depends(get_job_application_service),
):
    """Approve with a job offer; the applicant is emailed an onboarding link."""
    try:
        application, session = await service.approve(application_id, current_user, offer)
    except OnboardingError as e:
        raise to_http_exception(e)
    return ApplicationApproveResponse(
        application=application,
        onboarding_session_id=session.id,
        expires_at=session.expires_at,
    )


@router.post("/{application_id}/reject", response_model=JobApplication)
async def reject_job_application(
    application_id: UUID,
    request: ApplicationNotesRequest,
    current_user: CurrentUser = Depends(require_reviewer),
    service: JobApplicationService = Depends(get_job_application_service),
):
    try:
        return await service.reject(application_id, current_user, request.notes)
    except OnboardingError as e:
        raise to_http_exception(e)
