"""Manager and HR review of submitted onboarding sessions.

Reviewer writes are compare-and-set without retry: when two reviewers act on
the same version, one wins and the other gets Conflict. A reviewer acting on a
session that already moved past their stage also gets Conflict, as does one
whose expected version is stale.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from ...core.models.auth import CurrentUser
from ..models.session import EditRequest, OnboardingSession, ReviewEvent
from .errors import Conflict, IllegalTransition, ReviewerNotesRequired
from .materializer import Materializer
from .notification_relay import (
    NotificationKind,
    NotificationRelay,
    applicant_recipient,
    hr_recipient,
    notify_safely,
)
from .onboarding_state_machine import (
    ActorRole,
    SessionStatus,
    WorkflowAction,
    already_reviewed,
    can_transition,
    resolve_transition,
    transition_event,
)
from .onboarding_steps import REVIEW_STEP, section_step, steps_for_sections
from .onboarding_workflow import Clock, utc_now
from .session_store import SessionStore

logger = logging.getLogger(__name__)

_ROLE_BY_USER_ROLE = {
    "manager": ActorRole.MANAGER,
    "hr": ActorRole.HR,
    "admin": ActorRole.HR,
}


def reviewer_role(user: CurrentUser) -> ActorRole:
    role = _ROLE_BY_USER_ROLE.get(user.role)
    if role is None:
        raise IllegalTransition(f"Users with role '{user.role}' cannot review onboarding sessions")
    return role


def _check_review_inputs(
    session: OnboardingSession,
    action: WorkflowAction,
    notes: Optional[str],
    edit_requests: list[EditRequest],
) -> Optional[str]:
    """Validate reviewer input for ``action``; returns the notes to record."""
    notes = (notes or "").strip() or None

    if action == WorkflowAction.REJECT:
        if not notes:
            raise ReviewerNotesRequired("Rejection requires notes explaining the decision")
        return notes

    if action == WorkflowAction.REQUEST_CHANGES:
        if not edit_requests:
            raise ReviewerNotesRequired("Requesting changes requires at least one edit request")
        missing = [f"{r.section}.{r.field}" for r in edit_requests if not r.reason.strip()]
        if missing:
            raise ReviewerNotesRequired(f"Every edit request needs a reason (missing: {', '.join(missing)})")
        unflaggable = [r.section for r in edit_requests if section_step(r.section) is None]
        if unflaggable:
            raise IllegalTransition(f"Sections cannot be flagged for changes: {', '.join(unflaggable)}")
        return notes or "; ".join(r.reason.strip() for r in edit_requests)

    if edit_requests:
        raise IllegalTransition("Approval cannot carry edit requests")
    if session.edit_requests:
        raise IllegalTransition("Session has outstanding edit requests")
    return notes


class ReviewPipeline:
    def __init__(
        self,
        store: SessionStore,
        relay: NotificationRelay,
        materializer: Materializer,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.relay = relay
        self.materializer = materializer
        self.clock = clock

    async def get_session(self, session_id: UUID, reviewer: CurrentUser) -> OnboardingSession:
        return await self.store.get(session_id, reviewer.organization_id)

    async def pending_reviews(self, reviewer: CurrentUser) -> list[OnboardingSession]:
        """Sessions waiting on this reviewer's stage."""
        role = reviewer_role(reviewer)
        status = SessionStatus.SUBMITTED if role == ActorRole.MANAGER else SessionStatus.MANAGER_APPROVED
        return await self.store.list_sessions(reviewer.organization_id, statuses=[status])

    async def review(
        self,
        session_id: UUID,
        reviewer: CurrentUser,
        action: WorkflowAction,
        notes: Optional[str] = None,
        edit_requests: Optional[list[EditRequest]] = None,
        expected_version: Optional[int] = None,
    ) -> OnboardingSession:
        edit_requests = list(edit_requests or [])
        role = reviewer_role(reviewer)
        session = await self.store.get(session_id, reviewer.organization_id)
        state_from = session.status

        if expected_version is not None and expected_version != session.version:
            raise Conflict("Onboarding session was modified by another request. Reload and try again.")
        if not can_transition(state_from, action, role) and already_reviewed(state_from, action, role):
            raise Conflict(
                f"Onboarding session was already reviewed (status is {state_from.value}). Reload and try again."
            )

        # Legality first, then reviewer input; neither touches the store.
        target = resolve_transition(state_from, action, role)
        notes = _check_review_inputs(session, action, notes, edit_requests)

        now = self.clock()
        updated = session.model_copy(deep=True)
        updated.status = target
        updated.reviewed_at = now
        updated.reviewed_by = reviewer.id
        updated.review_notes = notes
        updated.updated_at = now

        if action == WorkflowAction.REQUEST_CHANGES:
            updated.edit_requests = edit_requests
            reopened = steps_for_sections(r.section for r in edit_requests)
            for key in reopened + [REVIEW_STEP]:
                updated.step_status[key] = "pending"
            updated.current_step = reopened[0]

        updated.review_history.append(
            ReviewEvent(
                action=action.value,
                actor_id=reviewer.id,
                actor_role=role.value,
                notes=notes,
                edit_requests=edit_requests,
                state_from=state_from,
                state_to=target,
                occurred_at=now,
            )
        )

        saved = await self.store.save(updated, session.version)
        logger.info(
            "[Onboarding] %s %s session %s: %s -> %s",
            role.value, action.value, saved.id, state_from.value, target.value,
        )

        await self._notify(saved, action, role, reviewer.id, state_from, edit_requests)

        if saved.status == SessionStatus.APPROVED:
            result = await self.materializer.materialize(saved)
            return result.session
        return saved

    async def _notify(
        self,
        session: OnboardingSession,
        action: WorkflowAction,
        role: ActorRole,
        actor_id: UUID,
        state_from: SessionStatus,
        edit_requests: list[EditRequest],
    ) -> None:
        event = transition_event(
            session_id=session.id,
            action=action,
            state_from=state_from,
            state_to=session.status,
            occurred_at=session.reviewed_at,
            actor_id=actor_id,
            actor_role=role,
        )
        payload = {
            "session_id": str(session.id),
            "status": session.status.value,
            "notes": session.review_notes,
            "event": event,
        }

        if action == WorkflowAction.REQUEST_CHANGES:
            kind = NotificationKind.EDIT_REQUEST
            payload["edit_requests"] = [r.model_dump(mode="json") for r in edit_requests]
            payload["message"] = "Please review the requested changes and resubmit your onboarding."
        elif action == WorkflowAction.REJECT:
            kind = NotificationKind.REJECTION
            payload["message"] = "Your onboarding was not approved."
        elif session.status == SessionStatus.MANAGER_APPROVED:
            kind = NotificationKind.APPROVAL
            payload["message"] = "Your manager approved your onboarding. HR will complete the final review."
        else:
            kind = NotificationKind.APPROVAL
            payload["message"] = "Your onboarding is approved. Welcome to the team!"

        await notify_safely(self.relay, applicant_recipient(session), kind, payload)

        if session.status == SessionStatus.MANAGER_APPROVED:
            alert = {
                "session_id": str(session.id),
                "candidate_name": f"{session.subject.first_name} {session.subject.last_name}",
                "position": session.subject.position,
                "message": (
                    f"{session.subject.first_name} {session.subject.last_name} was approved by "
                    f"their manager and is ready for HR review."
                ),
                "event": event,
            }
            await notify_safely(self.relay, hr_recipient(session), NotificationKind.NEW_HIRE_ALERT, alert)
