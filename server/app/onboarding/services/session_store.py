"""PostgreSQL persistence for onboarding sessions.

Every write is compare-and-set on the ``version`` column. ``expires_at`` is
written once on insert and never updated.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from ...database import get_connection
from ..models.session import OnboardingSession
from .errors import Conflict, SessionNotFound, TokenInvalid
from .onboarding_state_machine import SUBMITTED_OR_LATER, SessionStatus
from .token_issuer import TokenKind, is_expired as _token_expired, is_well_formed, normalize_token

logger = logging.getLogger(__name__)

_JSON_COLUMNS = (
    "subject",
    "step_status",
    "skipped_steps",
    "form_data",
    "documents",
    "signatures",
    "edit_requests",
    "review_history",
)

_OPEN_STATUSES = [
    SessionStatus.PENDING.value,
    SessionStatus.IN_PROGRESS.value,
    SessionStatus.REQUIRES_CHANGES.value,
]


def _json_value(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return value


def _row_to_session(row) -> OnboardingSession:
    data = dict(row)
    data["subject"] = _json_value(data.get("subject"), {})
    data["step_status"] = _json_value(data.get("step_status"), {})
    data["skipped_steps"] = _json_value(data.get("skipped_steps"), [])
    data["form_data"] = _json_value(data.get("form_data"), {})
    data["documents"] = _json_value(data.get("documents"), [])
    data["signatures"] = _json_value(data.get("signatures"), {})
    data["edit_requests"] = _json_value(data.get("edit_requests"), [])
    data["review_history"] = _json_value(data.get("review_history"), [])
    return OnboardingSession.model_validate(data)


def _json_params(session: OnboardingSession) -> list[str]:
    payload = {
        "subject": session.subject.model_dump(mode="json"),
        "step_status": session.step_status,
        "skipped_steps": session.skipped_steps,
        "form_data": session.form_data.to_storage(),
        "documents": [doc.model_dump(mode="json") for doc in session.documents],
        "signatures": session.signatures,
        "edit_requests": [req.model_dump(mode="json") for req in session.edit_requests],
        "review_history": [event.model_dump(mode="json") for event in session.review_history],
    }
    return [json.dumps(payload[column]) for column in _JSON_COLUMNS]


def is_expired(session: OnboardingSession, now: datetime) -> bool:
    return _token_expired(session.expires_at, now)


def is_complete(session: OnboardingSession) -> bool:
    return session.status in SUBMITTED_OR_LATER


class SessionStore:
    """asyncpg-backed store. One instance per request."""

    def __init__(self, code_length: int = 6):
        self.code_length = code_length

    async def create(self, session: OnboardingSession) -> OnboardingSession:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO onboarding_sessions (
                    id, organization_id, job_application_id, manager_id, created_by,
                    token, token_kind, expires_at, candidate_email, status, current_step,
                    subject, step_status, skipped_steps, form_data, documents,
                    signatures, edit_requests, review_history,
                    version, created_at, updated_at
                )
                VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                    $12::jsonb, $13::jsonb, $14::jsonb, $15::jsonb, $16::jsonb,
                    $17::jsonb, $18::jsonb, $19::jsonb,
                    1, $20, $20
                )
                RETURNING *
                """,
                session.id,
                session.organization_id,
                session.job_application_id,
                session.manager_id,
                session.created_by,
                session.token,
                session.token_kind.value,
                session.expires_at,
                session.candidate_email.lower(),
                session.status.value,
                session.current_step,
                *_json_params(session),
                session.created_at,
            )
        return _row_to_session(row)

    async def get(self, session_id: UUID, organization_id: Optional[UUID] = None) -> OnboardingSession:
        async with get_connection() as conn:
            if organization_id is None:
                row = await conn.fetchrow("SELECT * FROM onboarding_sessions WHERE id = $1", session_id)
            else:
                row = await conn.fetchrow(
                    "SELECT * FROM onboarding_sessions WHERE id = $1 AND organization_id = $2",
                    session_id,
                    organization_id,
                )
        if not row:
            raise SessionNotFound("Onboarding session not found")
        return _row_to_session(row)

    async def get_by_token(self, raw_token: str) -> OnboardingSession:
        """Look up by token. Malformed tokens never reach the database."""
        token = normalize_token(raw_token)
        if not is_well_formed(token, self.code_length):
            raise TokenInvalid("Malformed onboarding token")
        async with get_connection() as conn:
            row = await conn.fetchrow("SELECT * FROM onboarding_sessions WHERE token = $1", token)
        if not row:
            raise TokenInvalid("Unknown onboarding token")
        return _row_to_session(row)

    async def token_exists(self, token: str) -> bool:
        async with get_connection() as conn:
            found = await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM onboarding_sessions WHERE token = $1)",
                token,
            )
        return bool(found)

    async def find_open_for_candidate(
        self,
        organization_id: UUID,
        email: str,
        now: datetime,
    ) -> list[OnboardingSession]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM onboarding_sessions
                WHERE organization_id = $1
                  AND LOWER(candidate_email) = LOWER($2)
                  AND status = ANY($3::text[])
                  AND expires_at >= $4
                ORDER BY created_at DESC
                """,
                organization_id,
                email,
                _OPEN_STATUSES,
                now,
            )
        return [_row_to_session(row) for row in rows]

    async def list_sessions(
        self,
        organization_id: UUID,
        statuses: Optional[Iterable[SessionStatus]] = None,
        token_kind: Optional[TokenKind] = None,
        created_by: Optional[UUID] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[OnboardingSession]:
        conditions = ["organization_id = $1"]
        params: list[Any] = [organization_id]

        if statuses:
            params.append([SessionStatus(s).value for s in statuses])
            conditions.append(f"status = ANY(${len(params)}::text[])")
        if token_kind is not None:
            params.append(token_kind.value)
            conditions.append(f"token_kind = ${len(params)}")
        if created_by is not None:
            params.append(created_by)
            conditions.append(f"created_by = ${len(params)}")

        params.extend([limit, offset])
        query = f"""
            SELECT * FROM onboarding_sessions
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
        """
        async with get_connection() as conn:
            rows = await conn.fetch(query, *params)
        return [_row_to_session(row) for row in rows]

    async def save(self, session: OnboardingSession, expected_version: int) -> OnboardingSession:
        """Persist all mutable fields if nobody else wrote since ``expected_version``."""
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE onboarding_sessions
                SET status = $3,
                    current_step = $4,
                    subject = $5::jsonb,
                    step_status = $6::jsonb,
                    skipped_steps = $7::jsonb,
                    form_data = $8::jsonb,
                    documents = $9::jsonb,
                    signatures = $10::jsonb,
                    edit_requests = $11::jsonb,
                    review_history = $12::jsonb,
                    submitted_at = $13,
                    reviewed_at = $14,
                    reviewed_by = $15,
                    review_notes = $16,
                    employee_id = $17,
                    completed_at = $18,
                    updated_at = $19,
                    version = version + 1
                WHERE id = $1 AND version = $2
                RETURNING *
                """,
                session.id,
                expected_version,
                session.status.value,
                session.current_step,
                *_json_params(session),
                session.submitted_at,
                session.reviewed_at,
                session.reviewed_by,
                session.review_notes,
                session.employee_id,
                session.completed_at,
                session.updated_at,
            )
        if not row:
            logger.info("[SessionStore] Version conflict on session %s (expected v%d)", session.id, expected_version)
            raise Conflict("Onboarding session was modified by another request. Reload and try again.")
        return _row_to_session(row)
