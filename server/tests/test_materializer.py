import asyncio
import json
from datetime import datetime, timezone
from uuid import uuid4

import asyncpg
import pytest

from app.onboarding.models.session import FormData
from app.onboarding.services import materializer as materializer_module
from app.onboarding.services.errors import IllegalTransition, MaterializationFailed
from app.onboarding.services.materializer import (
    EmployeeRecordStore,
    build_employee_record,
    employee_number_for,
)
from app.onboarding.services.notification_relay import NotificationKind
from app.onboarding.services.onboarding_state_machine import SessionStatus


def _complete_form():
    return FormData.model_validate({
        "personal": {
            "first_name": "Maria",
            "last_name": "Lopez-Garza",
            "email": "maria.lopez@example.com",
            "phone": "409-555-0142",
        },
        "address": {"street": "12 Harbor Rd", "apartment": "3B", "city": "Galveston", "state": "TX", "zip_code": "77550"},
        "emergency_contact": {"name": "Ana Lopez", "relationship": "Sister", "phone": "409-555-0199"},
    })


def test_employee_number_is_stable_per_session():
    session_id = uuid4()
    assert employee_number_for(session_id) == employee_number_for(session_id)
    assert employee_number_for(session_id).startswith("EMP-")
    assert len(employee_number_for(session_id)) == 14


def test_build_employee_record_prefers_entered_values(make_session):
    session = make_session(status=SessionStatus.APPROVED, form_data=_complete_form())
    record = build_employee_record(session)

    assert record.last_name == "Lopez-Garza"
    assert record.phone == "409-555-0142"
    assert record.address.apartment == "3B"
    assert record.emergency_contact["relationship"] == "Sister"
    assert record.manager_id == session.manager_id
    assert str(record.pay_rate) == "15.50"


def test_build_employee_record_never_defaults_missing_data(make_session):
    session = make_session(status=SessionStatus.APPROVED)
    session.subject.start_date = None

    with pytest.raises(MaterializationFailed) as exc:
        build_employee_record(session)
    assert "hire_date" in exc.value.missing_fields
    assert "address.street" in exc.value.missing_fields


def test_materialize_completes_session_once(materializer, employees, store, make_session):
    session = make_session(status=SessionStatus.APPROVED, form_data=_complete_form())

    first = asyncio.run(materializer.materialize(session))
    assert first.session.status == SessionStatus.COMPLETED
    assert first.session.employee_id == first.employee.id
    assert first.session.review_history[-1].action == "complete"

    second = asyncio.run(materializer.materialize(session))
    assert second.employee.id == first.employee.id
    assert second.session.version == first.session.version
    assert employees.create_calls == 1


def test_materialize_reuses_existing_employee_row(materializer, employees, make_session):
    session = make_session(status=SessionStatus.APPROVED, form_data=_complete_form())
    existing = build_employee_record(session)
    employees.records[session.id] = existing

    result = asyncio.run(materializer.materialize(session))
    assert result.employee.id == existing.id
    assert employees.create_calls == 0
    assert result.session.status == SessionStatus.COMPLETED


def test_materialize_requires_approved_session(materializer, make_session):
    session = make_session(status=SessionStatus.MANAGER_APPROVED, form_data=_complete_form())
    with pytest.raises(IllegalTransition, match="Only approved sessions"):
        asyncio.run(materializer.materialize(session))


def test_materialize_failure_alerts_hr_and_keeps_session_approved(materializer, relay, store, make_session):
    session = make_session(status=SessionStatus.APPROVED)

    with pytest.raises(MaterializationFailed):
        asyncio.run(materializer.materialize(session))

    assert store.sessions[session.id].status == SessionStatus.APPROVED
    recipient, kind, payload = relay.sent[-1]
    assert kind == NotificationKind.MATERIALIZATION_FAILED
    assert recipient.role == "hr"
    assert "address.city" in payload["missing_fields"]


def test_database_errors_are_reported_as_materialization_failures(materializer, employees, relay, make_session):
    session = make_session(status=SessionStatus.APPROVED, form_data=_complete_form())

    async def _broken_create(record):
        raise asyncpg.PostgresError("connection reset")

    employees.create = _broken_create
    with pytest.raises(MaterializationFailed, match="Database error"):
        asyncio.run(materializer.materialize(session))
    assert relay.sent[-1][1] == NotificationKind.MATERIALIZATION_FAILED


class _ConnectionContext:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _EmployeeInsertConn:
    """Simulates a second materialization racing the first: the employee row already exists."""

    def __init__(self, existing_row, user_row=None):
        self.existing_row = existing_row
        self.user_row = user_row
        self.queries = []

    def transaction(self):
        return _ConnectionContext(self)

    async def fetchval(self, query, *args):
        self.queries.append(query)
        if "INSERT INTO users" in query:
            return None
        raise AssertionError(f"Unexpected fetchval query: {query}")

    async def fetchrow(self, query, *args):
        self.queries.append(query)
        if "INSERT INTO employees" in query:
            assert "ON CONFLICT (onboarding_session_id) DO NOTHING" in query
            return None
        if "SELECT * FROM employees" in query:
            return self.existing_row
        if "FROM users WHERE email" in query:
            return self.user_row
        raise AssertionError(f"Unexpected fetchrow query: {query}")


def test_employee_store_returns_existing_row_on_conflict(monkeypatch, make_session):
    session = make_session(status=SessionStatus.APPROVED, form_data=_complete_form())
    record = build_employee_record(session)
    existing_row = dict(
        record.model_dump(),
        id=uuid4(),
        user_id=uuid4(),
        address=json.dumps(record.address.model_dump()),
        emergency_contact=json.dumps(record.emergency_contact),
        created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )
    conn = _EmployeeInsertConn(
        existing_row,
        user_row={"id": existing_row["user_id"], "role": "employee", "organization_id": record.organization_id},
    )
    monkeypatch.setattr(materializer_module, "get_connection", lambda: _ConnectionContext(conn))

    stored = asyncio.run(EmployeeRecordStore().create(record))

    assert stored.id == existing_row["id"]
    assert stored.address.city == "Galveston"
    assert any("SELECT id, role, organization_id FROM users" in q for q in conn.queries)


@pytest.mark.parametrize("role, same_org", [("manager", True), ("employee", False)])
def test_employee_store_refuses_to_link_foreign_accounts(monkeypatch, make_session, role, same_org):
    session = make_session(status=SessionStatus.APPROVED, form_data=_complete_form())
    record = build_employee_record(session)
    user_row = {
        "id": uuid4(),
        "role": role,
        "organization_id": record.organization_id if same_org else uuid4(),
    }
    conn = _EmployeeInsertConn(existing_row=None, user_row=user_row)
    monkeypatch.setattr(materializer_module, "get_connection", lambda: _ConnectionContext(conn))

    with pytest.raises(MaterializationFailed, match="already exists"):
        asyncio.run(EmployeeRecordStore().create(record))

    assert not any("INSERT INTO employees" in q for q in conn.queries)


def test_foreign_account_conflict_alerts_hr(materializer, employees, relay, store, make_session):
    session = make_session(status=SessionStatus.APPROVED, form_data=_complete_form())

    async def taken(record):
        raise MaterializationFailed(f"An account with email {record.email} already exists")

    employees.create = taken
    with pytest.raises(MaterializationFailed):
        asyncio.run(materializer.materialize(session))

    assert relay.kinds() == [NotificationKind.MATERIALIZATION_FAILED]
    assert asyncio.run(store.get(session.id)).status == SessionStatus.APPROVED
