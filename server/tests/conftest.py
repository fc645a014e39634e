import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from app.config import Settings
from app.core.models.auth import CurrentUser
from app.onboarding.models.session import (
    CandidateSubject,
    DocumentDescriptor,
    OnboardingSession,
    WalkInSessionCreate,
)
from app.onboarding.services.errors import Conflict, SessionNotFound, TokenInvalid
from app.onboarding.services.materializer import Materializer
from app.onboarding.services.onboarding_state_machine import SessionStatus
from app.onboarding.services.onboarding_steps import FIRST_STEP, initial_step_status
from app.onboarding.services.onboarding_workflow import OnboardingWorkflow
from app.onboarding.services.review_pipeline import ReviewPipeline
from app.onboarding.services.token_issuer import TokenKind, is_well_formed, normalize_token

ORG_ID = UUID("7d1f0c2a-3b4e-4f5a-9c6d-1e2f3a4b5c6d")
MANAGER_ID = UUID("0a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d")
HR_ID = UUID("1b2c3d4e-5f6a-4b7c-9d8e-0f1a2b3c4d5e")


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemorySessionStore:
    """Same contract as SessionStore, without Postgres."""

    def __init__(self, code_length: int = 6):
        self.code_length = code_length
        self.sessions: dict[UUID, OnboardingSession] = {}
        self.save_calls = 0
        self.forced_conflicts = 0

    async def create(self, session):
        await asyncio.sleep(0)
        stored = session.model_copy(deep=True)
        stored.version = 1
        self.sessions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, session_id, organization_id=None):
        await asyncio.sleep(0)
        session = self.sessions.get(session_id)
        if session is None or (organization_id is not None and session.organization_id != organization_id):
            raise SessionNotFound("Onboarding session not found")
        return session.model_copy(deep=True)

    async def get_by_token(self, raw_token):
        token = normalize_token(raw_token)
        if not is_well_formed(token, self.code_length):
            raise TokenInvalid("Malformed onboarding token")
        await asyncio.sleep(0)
        for session in self.sessions.values():
            if session.token == token:
                return session.model_copy(deep=True)
        raise TokenInvalid("Unknown onboarding token")

    async def token_exists(self, token):
        return any(s.token == token for s in self.sessions.values())

    async def find_open_for_candidate(self, organization_id, email, now):
        return [
            s.model_copy(deep=True)
            for s in self.sessions.values()
            if s.organization_id == organization_id
            and s.candidate_email.lower() == email.lower()
            and s.status in (SessionStatus.PENDING, SessionStatus.IN_PROGRESS, SessionStatus.REQUIRES_CHANGES)
            and s.expires_at >= now
        ]

    async def list_sessions(self, organization_id, statuses=None, token_kind=None, created_by=None,
                            limit=100, offset=0):
        wanted = {SessionStatus(s) for s in statuses} if statuses else None
        found = [
            s.model_copy(deep=True)
            for s in self.sessions.values()
            if s.organization_id == organization_id
            and (wanted is None or s.status in wanted)
            and (token_kind is None or s.token_kind == token_kind)
            and (created_by is None or s.created_by == created_by)
        ]
        return found[offset:offset + limit]

    async def save(self, session, expected_version):
        self.save_calls += 1
        await asyncio.sleep(0)
        current = self.sessions[session.id]
        if self.forced_conflicts:
            self.forced_conflicts -= 1
            raise Conflict("Onboarding session was modified by another request. Reload and try again.")
        if current.version != expected_version:
            raise Conflict("Onboarding session was modified by another request. Reload and try again.")
        stored = session.model_copy(deep=True)
        stored.version = current.version + 1
        self.sessions[stored.id] = stored
        return stored.model_copy(deep=True)


class RecordingRelay:
    def __init__(self):
        self.sent = []

    async def notify(self, recipient, kind, payload):
        self.sent.append((recipient, kind, payload))

    def kinds(self):
        return [kind for _, kind, _ in self.sent]


class BrokenRelay:
    async def notify(self, recipient, kind, payload):
        raise RuntimeError("redis is down")


class InMemoryEmployeeStore:
    def __init__(self):
        self.records = {}
        self.create_calls = 0

    async def get_by_session(self, session_id):
        return self.records.get(session_id)

    async def create(self, record):
        self.create_calls += 1
        return self.records.setdefault(record.onboarding_session_id, record)


class FakeDocuments:
    def __init__(self, clock):
        self.clock = clock
        self.stored = []
        self.discarded = []

    async def store_document(self, session_id, content, filename, content_type, document_type, ocr=None):
        descriptor = DocumentDescriptor(
            id=uuid4(),
            document_type=document_type,
            filename=filename,
            storage_path=f"/uploads/onboarding/{session_id}/{filename}",
            content_type=content_type,
            uploaded_at=self.clock(),
            ocr=ocr,
        )
        self.stored.append(descriptor)
        return descriptor

    async def discard(self, descriptor):
        self.discarded.append(descriptor)


@pytest.fixture
def settings():
    return Settings(
        database_url="postgresql://localhost/innkeeper_test",
        jwt_secret_key="test-secret",
        hr_notification_emails=("hr@seabreeze-inn.com",),
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def broken_relay():
    return BrokenRelay()


@pytest.fixture
def employees():
    return InMemoryEmployeeStore()


@pytest.fixture
def documents(clock):
    return FakeDocuments(clock)


@pytest.fixture
def workflow(store, relay, settings, documents, clock):
    return OnboardingWorkflow(store, relay, settings, documents=documents, clock=clock)


@pytest.fixture
def materializer(store, employees, relay, clock):
    return Materializer(store, employees, relay, clock=clock)


@pytest.fixture
def pipeline(store, relay, materializer, clock):
    return ReviewPipeline(store, relay, materializer, clock=clock)


@pytest.fixture
def manager():
    return CurrentUser(id=MANAGER_ID, email="gm@seabreeze-inn.com", role="manager", organization_id=ORG_ID)


@pytest.fixture
def hr_user():
    return CurrentUser(id=HR_ID, email="hr@seabreeze-inn.com", role="hr", organization_id=ORG_ID)


@pytest.fixture
def walk_in_request():
    return WalkInSessionCreate(
        first_name="Maria",
        last_name="Lopez",
        email="maria.lopez@example.com",
        phone="409-555-0142",
        position="Front Desk Agent",
        department="Front Office",
        hourly_rate=Decimal("15.50"),
        start_date=date(2026, 3, 9),
        supervisor="Dana Whitfield",
    )


@pytest.fixture
def step_payloads():
    return {
        "language": {"language": "en"},
        "identity": {"email": "Maria.Lopez@example.com", "last_name": "lopez"},
        "personal": {
            "first_name": "Maria",
            "last_name": "Lopez",
            "email": "maria.lopez@example.com",
            "phone": "(409) 555-0142",
            "date_of_birth": "04/12/1990",
            "ssn_last_four": "1234",
        },
        "address": {"street": "12 Harbor Rd", "city": "Galveston", "state": "TX", "zip_code": "77550"},
        "emergency_contact": {"name": "Ana Lopez", "relationship": "Sister", "phone": "409-555-0199"},
        "i9": {"citizenship_status": "citizen", "attestation": True},
        "w4": {"filing_status": "single", "extra_withholding": "25.00"},
        "handbook": {"acknowledged": True, "handbook_version": "2026.1"},
        "signature": {"employee": "data:image/png;base64,iVBORw0KGgo="},
    }


@pytest.fixture
def fill_all_steps(workflow, step_payloads):
    """Walk a session through every step up to (not including) review."""
    async def _fill(token):
        session = None
        for key in ("language", "identity", "personal", "address", "emergency_contact"):
            session = await workflow.submit_step(token, key, step_payloads[key])
        await workflow.attach_document(token, b"\xff\xd8\xff", "license.jpg", "image/jpeg", "drivers_license")
        session = await workflow.submit_step(token, "documents", {})
        for key in ("i9", "w4", "handbook", "signature"):
            session = await workflow.submit_step(token, key, step_payloads[key])
        return session

    return _fill


@pytest.fixture
def make_session(store, clock):
    """Insert a session directly into the store in the given status."""
    def _make(status=SessionStatus.PENDING, token="QRS234", token_kind=TokenKind.ACCESS_CODE, **overrides):
        now = clock()
        session = OnboardingSession(
            id=uuid4(),
            organization_id=ORG_ID,
            manager_id=MANAGER_ID,
            created_by=MANAGER_ID,
            token=token,
            token_kind=token_kind,
            expires_at=now + timedelta(hours=120),
            candidate_email="maria.lopez@example.com",
            subject=CandidateSubject(
                first_name="Maria",
                last_name="Lopez",
                email="maria.lopez@example.com",
                position="Front Desk Agent",
                department="Front Office",
                pay_rate=Decimal("15.50"),
                start_date=date(2026, 3, 9),
            ),
            status=status,
            current_step=FIRST_STEP,
            step_status=initial_step_status(),
            created_at=now,
            updated_at=now,
        )
        session = session.model_copy(update=overrides)
        store.sessions[session.id] = session
        return session

    return _make
