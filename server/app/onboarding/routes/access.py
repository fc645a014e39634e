"""
Applicant-facing onboarding routes.
No login: the access code or emailed bearer token in the path is the credential.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from ..dependencies import get_upload_workflow, get_workflow
from ..models.session import (
    ApplicantSessionResponse,
    NavigateRequest,
    OcrExtraction,
    OnboardingSession,
    StepSubmitRequest,
)
from ..services.errors import OnboardingError
from ..services.onboarding_steps import progress_percentage, step_states
from ..services.onboarding_workflow import OnboardingWorkflow
from .errors import to_http_exception

router = APIRouter()


def applicant_view(session: OnboardingSession) -> ApplicantSessionResponse:
    return ApplicantSessionResponse(
        id=session.id,
        status=session.status,
        current_step=session.current_step,
        progress=progress_percentage(session),
        steps=step_states(session),
        subject=session.subject,
        form_data=session.form_data.to_storage(),
        documents=session.documents,
        signature_keys=sorted(session.signatures),
        edit_requests=session.edit_requests,
        expires_at=session.expires_at,
    )


@router.get("/{token}", response_model=ApplicantSessionResponse)
async def get_onboarding_session(
    token: str,
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    try:
        session = await workflow.open_session(token)
    except OnboardingError as e:
        raise to_http_exception(e)
    return applicant_view(session)


@router.put("/{token}/steps/{step}", response_model=ApplicantSessionResponse)
async def submit_onboarding_step(
    token: str,
    step: str,
    request: StepSubmitRequest,
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    try:
        session = await workflow.submit_step(token, step, request.data)
    except OnboardingError as e:
        raise to_http_exception(e)
    return applicant_view(session)


@router.post("/{token}/steps/{step}/skip", response_model=ApplicantSessionResponse)
async def skip_onboarding_step(
    token: str,
    step: str,
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    try:
        session = await workflow.skip_step(token, step)
    except OnboardingError as e:
        raise to_http_exception(e)
    return applicant_view(session)


@router.post("/{token}/navigate", response_model=ApplicantSessionResponse)
async def navigate_onboarding(
    token: str,
    request: NavigateRequest,
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    try:
        session = await workflow.go_to_step(token, request.step)
    except OnboardingError as e:
        raise to_http_exception(e)
    return applicant_view(session)


@router.post("/{token}/documents", response_model=ApplicantSessionResponse)
async def upload_onboarding_document(
    token: str,
    file: UploadFile = File(...),
    document_type: str = Form(...),
    ocr_document_number: Optional[str] = Form(None),
    ocr_expiration_date: Optional[str] = Form(None),
    ocr_full_name: Optional[str] = Form(None),
    workflow: OnboardingWorkflow = Depends(get_upload_workflow),
):
    content = await file.read()
    ocr = None
    if ocr_document_number or ocr_expiration_date or ocr_full_name:
        ocr = OcrExtraction(
            document_number=ocr_document_number,
            expiration_date=ocr_expiration_date,
            full_name=ocr_full_name,
        )

    try:
        session = await workflow.attach_document(
            token,
            content,
            file.filename or "",
            file.content_type or "application/octet-stream",
            document_type,
            ocr,
        )
    except OnboardingError as e:
        raise to_http_exception(e)
    except RuntimeError as e:
        raise HTTPException(status_code=502, detail=f"Document storage failed: {e}")
    return applicant_view(session)


@router.post("/{token}/submit", response_model=ApplicantSessionResponse)
async def submit_onboarding(
    token: str,
    workflow: OnboardingWorkflow = Depends(get_workflow),
):
    try:
        session = await workflow.submit(token)
    except OnboardingError as e:
        raise to_http_exception(e)
    return applicant_view(session)
