"""Job applications and offers, upstream of onboarding.

Approving an application with a job offer issues a remote onboarding session
(bearer token, emailed link).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from ...config import Settings
from ...core.feature_flags import is_feature_enabled
from ...core.models.auth import CurrentUser
from ...database import get_connection
from ..models.job_application import (
    ApplicationStatus,
    JobApplication,
    JobApplicationCreate,
    JobOffer,
)
from ..models.session import CandidateSubject, OnboardingSession
from .errors import ApplicationNotFound, Conflict, IllegalTransition, ReviewerNotesRequired, ValidationFailed
from .onboarding_steps import validate_pay_rate
from .onboarding_workflow import OnboardingWorkflow, utc_now
from .token_issuer import ExpiryPolicy

logger = logging.getLogger(__name__)

_APPLICATION_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.PENDING: frozenset({
        ApplicationStatus.REVIEWED,
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
    }),
    ApplicationStatus.REVIEWED: frozenset({
        ApplicationStatus.APPROVED,
        ApplicationStatus.REJECTED,
    }),
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}


def ensure_application_transition(current: ApplicationStatus, target: ApplicationStatus) -> None:
    if target not in _APPLICATION_TRANSITIONS[current]:
        raise IllegalTransition(
            f"Application is {current.value} and cannot move to {target.value}"
        )


def validate_offer(offer: JobOffer, settings: Settings) -> None:
    errors: dict[str, str] = {}
    rate_error = validate_pay_rate(offer.pay_rate, settings.min_hourly_rate)
    if rate_error:
        errors["pay_rate"] = rate_error
    if offer.start_date is None:
        errors["start_date"] = "Start date is required"
    if not (offer.supervisor or "").strip():
        errors["supervisor"] = "Supervisor is required"
    if errors:
        raise ValidationFailed(errors, "Job offer is incomplete")


def _row_to_application(row) -> JobApplication:
    data = dict(row)
    offer = data.get("job_offer")
    if isinstance(offer, str):
        data["job_offer"] = json.loads(offer)
    return JobApplication.model_validate(data)


class JobApplicationStore:
    async def organization_accepts_applications(self, organization_id: UUID) -> bool:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT enabled_features FROM companies WHERE id = $1",
                organization_id,
            )
        return bool(row) and is_feature_enabled(row["enabled_features"], "job_board")

    async def create(self, organization_id: UUID, payload: JobApplicationCreate) -> JobApplication:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO job_applications (
                    organization_id, first_name, last_name, email, phone,
                    position, department, cover_letter, status
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'pending')
                RETURNING *
                """,
                organization_id,
                payload.first_name.strip(),
                payload.last_name.strip(),
                str(payload.email).lower(),
                payload.phone,
                payload.position,
                payload.department,
                payload.cover_letter,
            )
        return _row_to_application(row)

    async def get(self, application_id: UUID, organization_id: UUID) -> JobApplication:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM job_applications WHERE id = $1 AND organization_id = $2",
                application_id,
                organization_id,
            )
        if not row:
            raise ApplicationNotFound("Job application not found")
        return _row_to_application(row)

    async def list_for_organization(
        self,
        organization_id: UUID,
        status: Optional[ApplicationStatus] = None,
    ) -> list[JobApplication]:
        async with get_connection() as conn:
            if status is None:
                rows = await conn.fetch(
                    "SELECT * FROM job_applications WHERE organization_id = $1 ORDER BY created_at DESC",
                    organization_id,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT * FROM job_applications
                    WHERE organization_id = $1 AND status = $2
                    ORDER BY created_at DESC
                    """,
                    organization_id,
                    status.value,
                )
        return [_row_to_application(row) for row in rows]

    async def update_status(
        self,
        application: JobApplication,
        new_status: ApplicationStatus,
        reviewer_id: UUID,
        notes: Optional[str],
        now: datetime,
        job_offer: Optional[JobOffer] = None,
    ) -> JobApplication:
        """Compare-and-set on the status the caller last saw."""
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE job_applications
                SET status = $3,
                    review_notes = COALESCE($4, review_notes),
                    reviewed_by = $5,
                    reviewed_at = $6,
                    job_offer = COALESCE($7::jsonb, job_offer),
                    updated_at = $6
                WHERE id = $1 AND status = $2
                RETURNING *
                """,
                application.id,
                application.status.value,
                new_status.value,
                notes,
                reviewer_id,
                now,
                job_offer.model_dump_json() if job_offer else None,
            )
        if not row:
            raise Conflict("Job application was updated by someone else. Reload and try again.")
        return _row_to_application(row)

    async def revert_approval(self, previous: JobApplication) -> None:
        """Undo an approval whose onboarding session was never issued."""
        async with get_connection() as conn:
            await conn.execute(
                """
                UPDATE job_applications
                SET status = $2,
                    job_offer = $3::jsonb,
                    reviewed_by = $4,
                    reviewed_at = $5,
                    updated_at = NOW()
                WHERE id = $1 AND status = 'approved' AND onboarding_session_id IS NULL
                """,
                previous.id,
                previous.status.value,
                previous.job_offer.model_dump_json() if previous.job_offer else None,
                previous.reviewed_by,
                previous.reviewed_at,
            )

    async def attach_session(self, application_id: UUID, session_id: UUID) -> None:
        async with get_connection() as conn:
            await conn.execute(
                "UPDATE job_applications SET onboarding_session_id = $2, updated_at = NOW() WHERE id = $1",
                application_id,
                session_id,
            )


class JobApplicationService:
    def __init__(
        self,
        store: JobApplicationStore,
        workflow: OnboardingWorkflow,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.workflow = workflow
        self.settings = settings
        self.clock = clock

    async def submit_application(self, organization_id: UUID, payload: JobApplicationCreate) -> JobApplication:
        if not await self.store.organization_accepts_applications(organization_id):
            raise ApplicationNotFound("This property is not accepting applications")
        application = await self.store.create(organization_id, payload)
        logger.info("[JobApplications] New application %s for %s", application.id, application.position)
        return application

    async def list_applications(
        self,
        reviewer: CurrentUser,
        status: Optional[ApplicationStatus] = None,
    ) -> list[JobApplication]:
        return await self.store.list_for_organization(reviewer.organization_id, status)

    async def mark_reviewed(
        self,
        application_id: UUID,
        reviewer: CurrentUser,
        notes: Optional[str] = None,
    ) -> JobApplication:
        application = await self.store.get(application_id, reviewer.organization_id)
        ensure_application_transition(application.status, ApplicationStatus.REVIEWED)
        return await self.store.update_status(
            application, ApplicationStatus.REVIEWED, reviewer.id, notes, self.clock()
        )

    async def reject(self, application_id: UUID, reviewer: CurrentUser, notes: Optional[str]) -> JobApplication:
        application = await self.store.get(application_id, reviewer.organization_id)
        ensure_application_transition(application.status, ApplicationStatus.REJECTED)
        if not (notes or "").strip():
            raise ReviewerNotesRequired("Rejecting an application requires notes")
        return await self.store.update_status(
            application, ApplicationStatus.REJECTED, reviewer.id, notes.strip(), self.clock()
        )

    async def approve(
        self,
        application_id: UUID,
        reviewer: CurrentUser,
        offer: JobOffer,
    ) -> tuple[JobApplication, OnboardingSession]:
        """Attach the offer, approve, and issue the applicant's onboarding session.

        The approval is claimed first so concurrent approvals cannot both issue
        sessions. If issuing fails the approval is reverted and can be retried.
        """
        application = await self.store.get(application_id, reviewer.organization_id)
        ensure_application_transition(application.status, ApplicationStatus.APPROVED)
        validate_offer(offer, self.settings)

        approved = await self.store.update_status(
            application, ApplicationStatus.APPROVED, reviewer.id, None, self.clock(), job_offer=offer
        )

        subject = CandidateSubject(
            first_name=approved.first_name,
            last_name=approved.last_name,
            email=approved.email,
            phone=approved.phone,
            position=approved.position,
            department=approved.department,
            pay_rate=offer.pay_rate,
            employment_type=offer.employment_type,
            start_date=offer.start_date,
            start_time=offer.start_time,
            supervisor=offer.supervisor,
            special_instructions=offer.special_instructions,
        )
        try:
            session = await self.workflow.issue_session(
                organization_id=approved.organization_id,
                subject=subject,
                policy=ExpiryPolicy.for_offer(self.settings),
                created_by=reviewer.id,
                manager_id=offer.manager_id or (reviewer.id if reviewer.role == "manager" else None),
                job_application_id=approved.id,
            )
        except Exception:
            logger.exception(
                "[JobApplications] Onboarding session not issued for application %s; reverting approval",
                approved.id,
            )
            await self.store.revert_approval(application)
            raise
        await self.store.attach_session(approved.id, session.id)
        approved = approved.model_copy(update={"onboarding_session_id": session.id})

        logger.info("[JobApplications] Application %s approved; onboarding session %s", approved.id, session.id)
        return approved, session

