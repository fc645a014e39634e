"""Turn an approved onboarding session into an active employee record.

Materialization is idempotent per session: the employees table is unique on
onboarding_session_id and an existing row is always reused.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

import asyncpg

from ...core.services.auth import unusable_password_hash
from ...database import get_connection
from ..models.employee import EmployeeAddress, EmployeeRecord
from ..models.session import OnboardingSession, ReviewEvent
from .errors import Conflict, IllegalTransition, MaterializationFailed
from .notification_relay import NotificationKind, NotificationRelay, hr_recipient, notify_safely
from .onboarding_state_machine import ActorRole, SessionStatus, WorkflowAction, resolve_transition
from .session_store import SessionStore

logger = logging.getLogger(__name__)

_ADDRESS_FIELDS = ("street", "city", "state", "zip_code")


def employee_number_for(session_id: UUID) -> str:
    """Stable employee number derived from the onboarding session id."""
    return f"EMP-{session_id.hex[:10].upper()}"


def build_employee_record(session: OnboardingSession) -> EmployeeRecord:
    """Map subject and form data onto an employee. Missing required data is an error, never defaulted."""
    personal = session.form_data.section("personal")
    address = session.form_data.section("address")
    emergency = session.form_data.section("emergency_contact")
    subject = session.subject

    values = {
        "first_name": personal.get("first_name") or subject.first_name,
        "last_name": personal.get("last_name") or subject.last_name,
        "email": personal.get("email") or subject.email,
        "position": subject.position,
        "department": subject.department,
        "pay_rate": subject.pay_rate,
        "hire_date": subject.start_date,
    }
    missing = [name for name, value in values.items() if value in (None, "")]
    missing += [f"address.{name}" for name in _ADDRESS_FIELDS if not address.get(name)]
    if missing:
        raise MaterializationFailed(
            f"Cannot create employee record; missing {', '.join(missing)}",
            missing_fields=missing,
        )

    return EmployeeRecord(
        id=uuid4(),
        employee_number=employee_number_for(session.id),
        organization_id=session.organization_id,
        onboarding_session_id=session.id,
        phone=personal.get("phone") or subject.phone,
        employment_type=subject.employment_type,
        manager_id=session.manager_id,
        address=EmployeeAddress(**{k: v for k, v in address.items() if k in EmployeeAddress.model_fields}),
        emergency_contact=emergency or None,
        **values,
    )


def _row_to_employee(row) -> EmployeeRecord:
    data = dict(row)
    for key in ("address", "emergency_contact"):
        if isinstance(data.get(key), str):
            data[key] = json.loads(data[key])
    return EmployeeRecord.model_validate(data)


class EmployeeRecordStore:
    async def get_by_session(self, session_id: UUID) -> Optional[EmployeeRecord]:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM employees WHERE onboarding_session_id = $1",
                session_id,
            )
        return _row_to_employee(row) if row else None

    async def create(self, record: EmployeeRecord) -> EmployeeRecord:
        """Create the login and the employee row in one transaction."""
        async with get_connection() as conn:
            async with conn.transaction():
                user_id = await conn.fetchval(
                    """
                    INSERT INTO users (email, password_hash, role, organization_id, name)
                    VALUES ($1, $2, 'employee', $3, $4)
                    ON CONFLICT (email) DO NOTHING
                    RETURNING id
                    """,
                    record.email.lower(),
                    unusable_password_hash(),
                    record.organization_id,
                    f"{record.first_name} {record.last_name}",
                )
                if user_id is None:
                    existing_user = await conn.fetchrow(
                        "SELECT id, role, organization_id FROM users WHERE email = $1",
                        record.email.lower(),
                    )
                    # Only an employee login at the same property can be linked.
                    if (
                        existing_user is None
                        or existing_user["role"] != "employee"
                        or existing_user["organization_id"] != record.organization_id
                    ):
                        raise MaterializationFailed(
                            f"An account with email {record.email.lower()} already exists"
                        )
                    user_id = existing_user["id"]

                row = await conn.fetchrow(
                    """
                    INSERT INTO employees (
                        id, organization_id, onboarding_session_id, user_id, employee_number,
                        first_name, last_name, email, phone, position, department,
                        pay_rate, employment_type, hire_date, manager_id,
                        address, emergency_contact
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                            $16::jsonb, $17::jsonb)
                    ON CONFLICT (onboarding_session_id) DO NOTHING
                    RETURNING *
                    """,
                    record.id,
                    record.organization_id,
                    record.onboarding_session_id,
                    user_id,
                    record.employee_number,
                    record.first_name,
                    record.last_name,
                    record.email.lower(),
                    record.phone,
                    record.position,
                    record.department,
                    record.pay_rate,
                    record.employment_type,
                    record.hire_date,
                    record.manager_id,
                    json.dumps(record.address.model_dump()),
                    json.dumps(record.emergency_contact) if record.emergency_contact else None,
                )
                if row is None:
                    row = await conn.fetchrow(
                        "SELECT * FROM employees WHERE onboarding_session_id = $1",
                        record.onboarding_session_id,
                    )
        return _row_to_employee(row)


@dataclass
class MaterializationResult:
    employee: EmployeeRecord
    session: OnboardingSession


class Materializer:
    def __init__(
        self,
        sessions: SessionStore,
        employees: EmployeeRecordStore,
        relay: NotificationRelay,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.sessions = sessions
        self.employees = employees
        self.relay = relay
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def materialize(self, session: OnboardingSession) -> MaterializationResult:
        current = await self.sessions.get(session.id)

        if current.status == SessionStatus.COMPLETED:
            existing = await self.employees.get_by_session(current.id)
            if existing is not None:
                return MaterializationResult(existing, current)
        if current.status != SessionStatus.APPROVED:
            raise IllegalTransition(
                f"Only approved sessions can be materialized (status is {current.status.value})"
            )

        try:
            employee = await self.employees.get_by_session(current.id)
            if employee is None:
                employee = await self.employees.create(build_employee_record(current))
        except MaterializationFailed as exc:
            await self._report_failure(current, exc)
            raise
        except asyncpg.PostgresError as exc:
            logger.exception("[Onboarding] Database error materializing session %s", current.id)
            failure = MaterializationFailed(f"Database error creating employee record: {exc}")
            await self._report_failure(current, failure)
            raise failure from exc

        now = self.clock()
        completed = current.model_copy(deep=True)
        completed.status = resolve_transition(current.status, WorkflowAction.COMPLETE, ActorRole.SYSTEM)
        completed.completed_at = now
        completed.updated_at = now
        completed.employee_id = employee.id
        completed.review_history.append(
            ReviewEvent(
                action=WorkflowAction.COMPLETE.value,
                actor_role=ActorRole.SYSTEM.value,
                state_from=current.status,
                state_to=completed.status,
                occurred_at=now,
            )
        )

        try:
            saved = await self.sessions.save(completed, current.version)
        except Conflict:
            latest = await self.sessions.get(current.id)
            if latest.status == SessionStatus.COMPLETED:
                return MaterializationResult(employee, latest)
            raise

        logger.info(
            "[Onboarding] Session %s materialized as employee %s (%s)",
            saved.id, employee.id, employee.employee_number,
        )
        return MaterializationResult(employee, saved)

    async def _report_failure(self, session: OnboardingSession, exc: MaterializationFailed) -> None:
        logger.error("[Onboarding] Materialization failed for session %s: %s", session.id, exc)
        await notify_safely(
            self.relay,
            hr_recipient(session),
            NotificationKind.MATERIALIZATION_FAILED,
            {
                "session_id": str(session.id),
                "candidate_name": f"{session.subject.first_name} {session.subject.last_name}",
                "missing_fields": exc.missing_fields,
                "message": str(exc),
            },
        )
