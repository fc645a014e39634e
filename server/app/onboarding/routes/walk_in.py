"""
Walk-in onboarding: a manager starts a session at the front desk and the
new hire finishes it on a tablet with a short access code.
"""
from fastapi import APIRouter, Depends

from ...core.dependencies import require_feature
from ...core.models.auth import CurrentUser
from ..dependencies import get_workflow
from ..models.session import IssuedSessionResponse, WalkInSessionCreate, WalkInSessionSummary
from ..services.errors import OnboardingError
from ..services.onboarding_steps import progress_percentage
from ..services.onboarding_workflow import OnboardingWorkflow
from .errors import to_http_exception

router = APIRouter()


@router.post("", response_model=IssuedSessionResponse)
async def create_walk_in_session(
    request: WalkInSessionCreate,
    current_user: CurrentUser = Depends(require_feature("walk_in_onboarding")),
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    try:
        session = await workflow.create_walk_in(current_user.organization_id, current_user.id, request)
    except OnboardingError as e:
        raise to_http_exception(e)
    return IssuedSessionResponse(
        session_id=session.id,
        token=session.token,
        token_kind=session.token_kind,
        expires_at=session.expires_at,
    )


@router.get("/active", response_model=list[WalkInSessionSummary])
async def list_active_walk_in_sessions(
    current_user: CurrentUser = Depends(require_feature("walk_in_onboarding")),
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    sessions = await workflow.active_walk_in_sessions(current_user.organization_id)
    return [
        WalkInSessionSummary(
            id=s.id,
            access_code=s.token,
            first_name=s.subject.first_name,
            last_name=s.subject.last_name,
            position=s.subject.position,
            status=s.status,
            progress=progress_percentage(s),
            expires_at=s.expires_at,
            created_at=s.created_at,
        )
        for s in sessions
    ]
