"""Applicant-facing onboarding workflow.

Covers issuing sessions, reading them by token, step submission and
navigation, document uploads, final submission, cancellation and reissue.
Every mutation goes through ``_apply``: a compare-and-set write that rereads
and re-applies the change when another request won the race.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from ...config import Settings
from ..models.session import (
    CandidateSubject,
    FormData,
    OcrExtraction,
    SECTION_MODELS,
    OnboardingSession,
    ReviewEvent,
    WalkInSessionCreate,
)
from .documents import DocumentStorage
from .errors import (
    Conflict,
    IllegalTransition,
    OnboardingError,
    StepValidationFailed,
    TokenExpired,
    TokenInvalid,
    ValidationFailed,
)
from .notification_relay import (
    NotificationKind,
    NotificationRelay,
    applicant_recipient,
    manager_recipient,
    notify_safely,
)
from .onboarding_state_machine import (
    EDITABLE_STATES,
    ActorRole,
    SessionStatus,
    WorkflowAction,
    resolve_transition,
    transition_event,
)
from .onboarding_steps import (
    FIRST_STEP,
    REVIEW_STEP,
    ensure_reachable,
    get_step,
    initial_step_status,
    merge_section,
    missing_steps,
    next_open_step,
    parse_section,
    validate_pay_rate,
    validate_step,
)
from .session_store import SessionStore, is_expired
from .token_issuer import ExpiryPolicy, TokenKind, issue_token

logger = logging.getLogger(__name__)

MAX_WRITE_RETRIES = 3

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OnboardingWorkflow:
    def __init__(
        self,
        store: SessionStore,
        relay: NotificationRelay,
        settings: Settings,
        documents: Optional[DocumentStorage] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.relay = relay
        self.settings = settings
        self.documents = documents
        self.clock = clock

    # ================================
    # Writes
    # ================================

    async def _apply(
        self,
        session: OnboardingSession,
        mutate: Callable[[OnboardingSession], None],
        retries: int = MAX_WRITE_RETRIES,
    ) -> OnboardingSession:
        """Apply ``mutate`` to a copy and CAS-save it, retrying on Conflict.

        ``mutate`` re-runs against the fresh row on every retry, so its checks
        always see the latest state. Any exception it raises leaves the stored
        session untouched.
        """
        attempt = 0
        while True:
            working = session.model_copy(deep=True)
            mutate(working)
            working.updated_at = self.clock()
            try:
                return await self.store.save(working, session.version)
            except Conflict:
                attempt += 1
                if attempt >= retries:
                    raise
                logger.info("[Onboarding] Retrying write on session %s (attempt %d)", session.id, attempt + 1)
                session = await self.store.get(session.id)

    def _history(
        self,
        session: OnboardingSession,
        action: str,
        role: ActorRole,
        state_from: SessionStatus,
        actor_id: Optional[UUID] = None,
        notes: Optional[str] = None,
    ) -> None:
        session.review_history.append(
            ReviewEvent(
                action=action,
                actor_id=actor_id,
                actor_role=role.value,
                notes=notes,
                state_from=state_from,
                state_to=session.status,
                occurred_at=self.clock(),
            )
        )

    def _applicant_touch(self, session: OnboardingSession) -> None:
        """First interaction starts the session; later ones keep it where it is."""
        if session.status == SessionStatus.PENDING:
            session.status = resolve_transition(session.status, WorkflowAction.START, ActorRole.APPLICANT)
        else:
            session.status = resolve_transition(session.status, WorkflowAction.ADVANCE, ActorRole.APPLICANT)

    # ================================
    # Issue / read
    # ================================

    async def issue_session(
        self,
        *,
        organization_id: UUID,
        subject: CandidateSubject,
        policy: ExpiryPolicy,
        created_by: Optional[UUID] = None,
        manager_id: Optional[UUID] = None,
        job_application_id: Optional[UUID] = None,
        carry_from: Optional[OnboardingSession] = None,
    ) -> OnboardingSession:
        """Create a session with a fresh token. Older open sessions for the same candidate are expired."""
        now = self.clock()
        for prior in await self.store.find_open_for_candidate(organization_id, subject.email, now):
            await self._expire(prior, ActorRole.SYSTEM, created_by, action="superseded")
            logger.info("[Onboarding] Session %s superseded for %s", prior.id, subject.email)

        issued = await issue_token(policy, self.store.token_exists, now)
        session = OnboardingSession(
            id=uuid4(),
            organization_id=organization_id,
            job_application_id=job_application_id,
            manager_id=manager_id,
            created_by=created_by,
            token=issued.token,
            token_kind=issued.kind,
            expires_at=issued.expires_at,
            candidate_email=subject.email.lower(),
            subject=subject,
            status=SessionStatus.PENDING,
            current_step=FIRST_STEP,
            step_status=initial_step_status(),
            created_at=now,
            updated_at=now,
        )
        if carry_from is not None:
            session.form_data = carry_from.form_data.model_copy(deep=True)
            session.documents = [doc.model_copy() for doc in carry_from.documents]
            session.signatures = dict(carry_from.signatures)
            if carry_from.edit_requests:
                # Still waiting on a resubmission; the next submit goes back to the manager as one.
                session.status = SessionStatus.REQUIRES_CHANGES
                session.edit_requests = [r.model_copy() for r in carry_from.edit_requests]
                session.step_status = dict(carry_from.step_status)
                session.current_step = carry_from.current_step
                session.review_notes = carry_from.review_notes

        created = await self.store.create(session)
        logger.info(
            "[Onboarding] Issued %s session %s for %s (expires %s)",
            created.token_kind.value, created.id, created.candidate_email, created.expires_at.isoformat(),
        )

        await notify_safely(
            self.relay,
            applicant_recipient(created),
            NotificationKind.ACCESS_CODE_DELIVERY,
            {
                "session_id": str(created.id),
                "token": created.token,
                "token_kind": created.token_kind.value,
                "position": subject.position,
                "expires_at": created.expires_at.strftime("%b %d, %Y at %I:%M %p UTC"),
            },
        )
        return created

    async def create_walk_in(
        self,
        organization_id: UUID,
        created_by: UUID,
        request: WalkInSessionCreate,
    ) -> OnboardingSession:
        rate_error = validate_pay_rate(request.hourly_rate, self.settings.min_hourly_rate)
        if rate_error:
            raise ValidationFailed({"hourly_rate": rate_error})

        subject = CandidateSubject(
            first_name=request.first_name.strip(),
            last_name=request.last_name.strip(),
            email=str(request.email).lower(),
            phone=request.phone,
            position=request.position,
            department=request.department,
            pay_rate=request.hourly_rate,
            employment_type=request.employment_type,
            start_date=request.start_date or self.clock().date(),
            start_time=request.start_time,
            supervisor=request.supervisor,
            special_instructions=request.special_instructions,
        )
        return await self.issue_session(
            organization_id=organization_id,
            subject=subject,
            policy=ExpiryPolicy.for_walk_in(self.settings),
            created_by=created_by,
            manager_id=request.manager_id or created_by,
        )

    async def active_walk_in_sessions(self, organization_id: UUID) -> list[OnboardingSession]:
        now = self.clock()
        sessions = await self.store.list_sessions(
            organization_id,
            statuses=EDITABLE_STATES,
            token_kind=TokenKind.ACCESS_CODE,
        )
        return [s for s in sessions if not is_expired(s, now)]

    async def open_session(self, token: str) -> OnboardingSession:
        """Resolve a token to its session. Expired editable sessions are marked expired here."""
        session = await self.store.get_by_token(token)
        if session.status == SessionStatus.EXPIRED:
            raise TokenInvalid("Onboarding session is no longer active")

        if is_expired(session, self.clock()):
            if session.status in EDITABLE_STATES:
                try:
                    await self._expire(session, ActorRole.SYSTEM, None, action="expired")
                except (Conflict, IllegalTransition):
                    logger.info("[Onboarding] Session %s changed while marking it expired", session.id)
            raise TokenExpired("Onboarding token has expired")
        return session

    # ================================
    # Steps
    # ================================

    async def submit_step(self, token: str, step_key: str, data: dict[str, Any]) -> OnboardingSession:
        session = await self.open_session(token)
        step = get_step(step_key)
        if step.key == REVIEW_STEP:
            return await self._submit(session)

        def mutate(s: OnboardingSession) -> None:
            self._applicant_touch(s)
            ensure_reachable(s, step.key)
            flagged = {request.section for request in s.edit_requests}

            if step.section in SECTION_MODELS:
                existing = s.form_data.section(step.section)
                merged = merge_section(existing, data, replace=step.section in flagged)
                merged = parse_section(step.section, merged, step.key)
                validate_step(step, merged, s)
                stored = s.form_data.to_storage()
                stored[step.section] = merged
                s.form_data = FormData.model_validate(stored)
            elif step.section == "signatures":
                bad = {key: "Signature must be text" for key, value in data.items() if not isinstance(value, str)}
                if bad:
                    raise StepValidationFailed(bad, step=step.key)
                merged = merge_section(s.signatures, data, replace="signatures" in flagged)
                validate_step(step, merged, s)
                s.signatures = merged
            else:
                validate_step(step, data, s)

            s.step_status[step.key] = "completed"
            if step.key in s.skipped_steps:
                s.skipped_steps.remove(step.key)
            s.current_step = next_open_step(s)

        saved = await self._apply(session, mutate)
        logger.debug("[Onboarding] Session %s completed step %s", saved.id, step.key)
        return saved

    async def skip_step(self, token: str, step_key: str) -> OnboardingSession:
        session = await self.open_session(token)
        step = get_step(step_key)
        if not step.optional:
            raise IllegalTransition(f"Step '{step.key}' is required and cannot be skipped")

        def mutate(s: OnboardingSession) -> None:
            self._applicant_touch(s)
            ensure_reachable(s, step.key)
            s.step_status[step.key] = "completed"
            if step.key not in s.skipped_steps:
                s.skipped_steps.append(step.key)
            s.current_step = next_open_step(s)

        return await self._apply(session, mutate)

    async def go_to_step(self, token: str, step_key: str) -> OnboardingSession:
        session = await self.open_session(token)
        step = get_step(step_key)

        def mutate(s: OnboardingSession) -> None:
            if s.status not in EDITABLE_STATES:
                raise IllegalTransition(f"Session is {s.status.value} and can no longer be edited")
            ensure_reachable(s, step.key)
            s.current_step = step.key

        return await self._apply(session, mutate)

    async def attach_document(
        self,
        token: str,
        content: bytes,
        filename: str,
        content_type: str,
        document_type: str,
        ocr: Optional[OcrExtraction] = None,
    ) -> OnboardingSession:
        if self.documents is None:
            raise RuntimeError("Document storage is not configured")
        session = await self.open_session(token)
        if session.status not in EDITABLE_STATES:
            raise IllegalTransition(f"Session is {session.status.value} and can no longer be edited")

        descriptor = await self.documents.store_document(
            session.id, content, filename, content_type, document_type, ocr
        )

        def mutate(s: OnboardingSession) -> None:
            self._applicant_touch(s)
            s.documents.append(descriptor)

        try:
            saved = await self._apply(session, mutate)
        except OnboardingError:
            await self.documents.discard(descriptor)
            raise
        logger.info("[Onboarding] Stored %s document for session %s", document_type, saved.id)
        return saved

    # ================================
    # Submission
    # ================================

    async def submit(self, token: str) -> OnboardingSession:
        return await self._submit(await self.open_session(token))

    async def _submit(self, session: OnboardingSession) -> OnboardingSession:
        def mutate(s: OnboardingSession) -> None:
            action = (
                WorkflowAction.RESUBMIT
                if s.status == SessionStatus.REQUIRES_CHANGES
                else WorkflowAction.SUBMIT
            )
            state_from = s.status
            target = resolve_transition(state_from, action, ActorRole.APPLICANT)
            missing = missing_steps(s)
            if missing:
                raise StepValidationFailed(missing, step=REVIEW_STEP)

            now = self.clock()
            s.step_status[REVIEW_STEP] = "completed"
            s.current_step = REVIEW_STEP
            s.status = target
            s.submitted_at = now
            # Outstanding requests stay recorded in review_history.
            s.edit_requests = []
            self._history(s, action.value, ActorRole.APPLICANT, state_from)

        saved = await self._apply(session, mutate)
        action = saved.review_history[-1].action
        resubmitted = action == WorkflowAction.RESUBMIT.value
        logger.info("[Onboarding] Session %s %s", saved.id, "resubmitted" if resubmitted else "submitted")

        payload = {
            "session_id": str(saved.id),
            "candidate_name": f"{saved.subject.first_name} {saved.subject.last_name}",
            "position": saved.subject.position,
            "message": (
                f"{saved.subject.first_name} {saved.subject.last_name} "
                f"{'resubmitted updated' if resubmitted else 'submitted'} onboarding paperwork."
            ),
            "event": transition_event(
                session_id=saved.id,
                action=action,
                state_from=saved.review_history[-1].state_from,
                state_to=saved.status,
                occurred_at=saved.submitted_at,
                actor_role=ActorRole.APPLICANT,
            ),
        }
        kind = NotificationKind.RESUBMISSION if resubmitted else NotificationKind.NEW_HIRE_ALERT
        await notify_safely(self.relay, manager_recipient(saved), kind, payload)
        return saved

    # ================================
    # Administration
    # ================================

    async def _expire(
        self,
        session: OnboardingSession,
        role: ActorRole,
        actor_id: Optional[UUID],
        action: str,
        notes: Optional[str] = None,
    ) -> OnboardingSession:
        def mutate(s: OnboardingSession) -> None:
            state_from = s.status
            s.status = resolve_transition(state_from, WorkflowAction.EXPIRE, role)
            self._history(s, action, role, state_from, actor_id=actor_id, notes=notes)

        return await self._apply(session, mutate)

    async def cancel(
        self,
        session_id: UUID,
        organization_id: UUID,
        actor_id: UUID,
        role: ActorRole,
        reason: Optional[str] = None,
    ) -> OnboardingSession:
        session = await self.store.get(session_id, organization_id)
        cancelled = await self._expire(session, role, actor_id, action="cancelled", notes=reason)
        logger.info("[Onboarding] Session %s cancelled by %s", session_id, actor_id)
        return cancelled

    async def reissue(
        self,
        session_id: UUID,
        organization_id: UUID,
        actor_id: UUID,
        role: ActorRole,
    ) -> OnboardingSession:
        """Expire the session (if still open) and issue a new one carrying its data forward."""
        session = await self.store.get(session_id, organization_id)
        if session.status in EDITABLE_STATES:
            session = await self._expire(session, role, actor_id, action="reissued")
        elif session.status != SessionStatus.EXPIRED:
            raise IllegalTransition(
                f"Only open or expired sessions can be reissued (status is {session.status.value})"
            )

        if session.token_kind == TokenKind.ACCESS_CODE:
            policy = ExpiryPolicy.for_walk_in(self.settings)
        else:
            policy = ExpiryPolicy.for_offer(self.settings)

        return await self.issue_session(
            organization_id=session.organization_id,
            subject=session.subject,
            policy=policy,
            created_by=actor_id,
            manager_id=session.manager_id,
            job_application_id=session.job_application_id,
            carry_from=session,
        )
