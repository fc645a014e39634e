"""
Reviewer routes for onboarding sessions.
Managers approve first, HR gives final approval; both are scoped to their property.
"""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from ...core.dependencies import require_hr, require_reviewer
from ...core.models.auth import CurrentUser
from ..dependencies import get_document_storage, get_materializer, get_review_pipeline, get_workflow
from ..models.employee import MaterializeResponse
from ..models.session import (
    IssuedSessionResponse,
    OnboardingSession,
    RequestChangesRequest,
    ReviewDecisionRequest,
    SessionDetailResponse,
    SessionListResponse,
    SessionSummary,
)
from ..services.documents import ObjectStorageDocuments
from ..services.errors import OnboardingError
from ..services.materializer import Materializer
from ..services.onboarding_state_machine import (
    SessionStatus,
    WorkflowAction,
    all_states,
    state_machine_map,
)
from ..services.onboarding_steps import ONBOARDING_STEPS, progress_percentage, step_states
from ..services.onboarding_workflow import OnboardingWorkflow
from ..services.review_pipeline import ReviewPipeline, reviewer_role
from ..services.token_issuer import TokenKind
from .errors import to_http_exception

router = APIRouter()


def _summary(session: OnboardingSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        status=session.status,
        token_kind=session.token_kind,
        candidate_email=session.candidate_email,
        first_name=session.subject.first_name,
        last_name=session.subject.last_name,
        position=session.subject.position,
        department=session.subject.department,
        current_step=session.current_step,
        progress=progress_percentage(session),
        expires_at=session.expires_at,
        submitted_at=session.submitted_at,
        created_at=session.created_at,
    )


def _detail(session: OnboardingSession) -> SessionDetailResponse:
    return SessionDetailResponse(
        session=session,
        progress=progress_percentage(session),
        steps=step_states(session),
    )


@router.get("", response_model=SessionListResponse)
async def list_onboarding_sessions(
    status: Optional[list[SessionStatus]] = Query(None),
    token_kind: Optional[TokenKind] = None,
    mine: bool = False,
    pending_review: bool = False,
    current_user: CurrentUser = Depends(require_reviewer),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    """List sessions for the reviewer's property. ``pending_review`` returns the reviewer's queue."""
    try:
        if pending_review:
            sessions = await pipeline.pending_reviews(current_user)
        else:
            sessions = await pipeline.store.list_sessions(
                current_user.organization_id,
                statuses=status,
                token_kind=token_kind,
                created_by=current_user.id if mine else None,
            )
    except OnboardingError as e:
        raise to_http_exception(e)
    return SessionListResponse(sessions=[_summary(s) for s in sessions], total=len(sessions))


@router.get("/state-machine")
async def get_onboarding_state_machine(
    current_user: CurrentUser = Depends(require_reviewer),
):
    return {
        "states": all_states(),
        "transitions": state_machine_map(),
        "steps": [
            {"key": step.key, "title": step.title, "optional": step.optional}
            for step in ONBOARDING_STEPS
        ],
    }


@router.get("/{session_id}", response_model=SessionDetailResponse)
async def get_onboarding_session_detail(
    session_id: UUID,
    current_user: CurrentUser = Depends(require_reviewer),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    try:
        session = await pipeline.get_session(session_id, current_user)
    except OnboardingError as e:
        raise to_http_exception(e)
    return _detail(session)


@router.post("/{session_id}/approve", response_model=SessionDetailResponse)
async def approve_onboarding_session(
    session_id: UUID,
    request: ReviewDecisionRequest,
    current_user: CurrentUser = Depends(require_reviewer),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    """Manager approval on submitted sessions; HR final approval (and employee creation) after that."""
    try:
        session = await pipeline.review(
            session_id, current_user, WorkflowAction.APPROVE, request.notes, expected_version=request.version
        )
    except OnboardingError as e:
        raise to_http_exception(e)
    return _detail(session)


@router.post("/{session_id}/request-changes", response_model=SessionDetailResponse)
async def request_onboarding_changes(
    session_id: UUID,
    request: RequestChangesRequest,
    current_user: CurrentUser = Depends(require_reviewer),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    try:
        session = await pipeline.review(
            session_id,
            current_user,
            WorkflowAction.REQUEST_CHANGES,
            request.notes,
            request.edit_requests,
            expected_version=request.version,
        )
    except OnboardingError as e:
        raise to_http_exception(e)
    return _detail(session)


@router.post("/{session_id}/reject", response_model=SessionDetailResponse)
async def reject_onboarding_session(
    session_id: UUID,
    request: ReviewDecisionRequest,
    current_user: CurrentUser = Depends(require_reviewer),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    try:
        session = await pipeline.review(
            session_id, current_user, WorkflowAction.REJECT, request.notes, expected_version=request.version
        )
    except OnboardingError as e:
        raise to_http_exception(e)
    return _detail(session)


@router.post("/{session_id}/materialize", response_model=MaterializeResponse)
async def materialize_onboarding_session(
    session_id: UUID,
    current_user: CurrentUser = Depends(require_hr),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
    materializer: Materializer = Depends(get_materializer),
):
    """Retry employee creation for an approved session."""
    try:
        session = await pipeline.get_session(session_id, current_user)
        result = await materializer.materialize(session)
    except OnboardingError as e:
        raise to_http_exception(e)
    return MaterializeResponse(
        employee=result.employee,
        session_id=result.session.id,
        status=result.session.status.value,
    )


@router.post("/{session_id}/cancel", response_model=SessionDetailResponse)
async def cancel_onboarding_session(
    session_id: UUID,
    request: ReviewDecisionRequest,
    current_user: CurrentUser = Depends(require_reviewer),
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    try:
        session = await workflow.cancel(
            session_id,
            current_user.organization_id,
            current_user.id,
            reviewer_role(current_user),
            request.notes,
        )
    except OnboardingError as e:
        raise to_http_exception(e)
    return _detail(session)


@router.post("/{session_id}/reissue", response_model=IssuedSessionResponse)
async def reissue_onboarding_session(
    session_id: UUID,
    current_user: CurrentUser = Depends(require_reviewer),
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    """Expire the session and issue a fresh token for the same candidate, keeping their answers."""
    try:
        session = await workflow.reissue(
            session_id,
            current_user.organization_id,
            current_user.id,
            reviewer_role(current_user),
        )
    except OnboardingError as e:
        raise to_http_exception(e)
    return IssuedSessionResponse(
        session_id=session.id,
        token=session.token,
        token_kind=session.token_kind,
        expires_at=session.expires_at,
        access_url=(
            f"{workflow.settings.app_base_url}/onboarding/{session.token}"
            if session.token_kind == TokenKind.BEARER
            else None
        ),
    )


@router.get("/{session_id}/documents/{document_id}")
async def get_onboarding_document_link(
    session_id: UUID,
    document_id: UUID,
    current_user: CurrentUser = Depends(require_reviewer),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
    documents: ObjectStorageDocuments = Depends(get_document_storage),
):
    try:
        session = await pipeline.get_session(session_id, current_user)
    except OnboardingError as e:
        raise to_http_exception(e)
    descriptor = next((doc for doc in session.documents if doc.id == document_id), None)
    if descriptor is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return {
        "id": str(descriptor.id),
        "filename": descriptor.filename,
        "content_type": descriptor.content_type,
        "url": documents.download_url(descriptor),
    }
