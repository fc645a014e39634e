"""Onboarding session models.

Form data is stored per section, each with its own schema. Sections accept
partial payloads while the applicant works through the steps; presence and
format checks happen in the step engine when a step is submitted.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictInt, confloat

from ..services.onboarding_state_machine import SessionStatus
from ..services.token_issuer import TokenKind


EmploymentType = Literal["full_time", "part_time", "contract", "temporary"]
SectionName = Literal[
    "preferences",
    "identity",
    "personal",
    "address",
    "emergency_contact",
    "documents",
    "i9",
    "w4",
    "handbook",
    "signatures",
]
CitizenshipStatus = Literal[
    "citizen",
    "noncitizen_national",
    "permanent_resident",
    "authorized_alien",
]
FilingStatus = Literal["single", "married_jointly", "head_of_household"]


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ================================
# Form sections
# ================================

class PreferencesSection(_Section):
    language: Optional[Literal["en", "es"]] = None


class IdentitySection(_Section):
    """What the applicant types to prove they are the invited candidate."""
    email: Optional[str] = None
    last_name: Optional[str] = None


class PersonalInfo(_Section):
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    ssn_last_four: Optional[str] = None


class Address(_Section):
    street: Optional[str] = None
    apartment: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


class EmergencyContact(_Section):
    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class I9Data(_Section):
    citizenship_status: Optional[CitizenshipStatus] = None
    other_last_names: Optional[str] = None
    uscis_number: Optional[str] = None
    alien_registration_number: Optional[str] = None
    work_authorization_expiration: Optional[str] = None
    i94_number: Optional[str] = None
    foreign_passport_number: Optional[str] = None
    country_of_issuance: Optional[str] = None
    attestation: Optional[bool] = None


# Numbers stay numbers and strings stay strings when the section is stored.
DollarAmount = Union[StrictInt, confloat(strict=True, allow_inf_nan=False), Decimal]


class W4Data(_Section):
    filing_status: Optional[FilingStatus] = None
    multiple_jobs: Optional[bool] = None
    dependents_amount: Optional[DollarAmount] = None
    other_income: Optional[DollarAmount] = None
    deductions: Optional[DollarAmount] = None
    extra_withholding: Optional[DollarAmount] = None
    exempt: Optional[bool] = None


class HandbookAcknowledgment(_Section):
    acknowledged: Optional[bool] = None
    handbook_version: Optional[str] = None
    acknowledged_at: Optional[datetime] = None


SECTION_MODELS: dict[str, type[_Section]] = {
    "preferences": PreferencesSection,
    "identity": IdentitySection,
    "personal": PersonalInfo,
    "address": Address,
    "emergency_contact": EmergencyContact,
    "i9": I9Data,
    "w4": W4Data,
    "handbook": HandbookAcknowledgment,
}


class FormData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    preferences: Optional[PreferencesSection] = None
    identity: Optional[IdentitySection] = None
    personal: Optional[PersonalInfo] = None
    address: Optional[Address] = None
    emergency_contact: Optional[EmergencyContact] = None
    i9: Optional[I9Data] = None
    w4: Optional[W4Data] = None
    handbook: Optional[HandbookAcknowledgment] = None
    # Fields from newer clients that no section declares yet.
    extra: dict[str, Any] = Field(default_factory=dict)

    def section(self, name: str) -> dict[str, Any]:
        value = getattr(self, name, None)
        if value is None:
            return {}
        return value.model_dump(mode="json", exclude_unset=True)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


# ================================
# Documents and review
# ================================

class OcrExtraction(BaseModel):
    document_number: Optional[str] = None
    expiration_date: Optional[str] = None
    full_name: Optional[str] = None
    confidence: Optional[float] = None


class DocumentDescriptor(BaseModel):
    id: UUID
    document_type: str
    filename: str
    storage_path: str
    content_type: str
    uploaded_at: datetime
    ocr: Optional[OcrExtraction] = None


class EditRequest(BaseModel):
    section: SectionName
    field: str
    current_value: Optional[Any] = None
    requested_change: str
    reason: str = ""


class ReviewEvent(BaseModel):
    action: str
    actor_id: Optional[UUID] = None
    actor_role: str
    notes: Optional[str] = None
    edit_requests: list[EditRequest] = Field(default_factory=list)
    state_from: SessionStatus
    state_to: SessionStatus
    occurred_at: datetime


# ================================
# Session
# ================================

class CandidateSubject(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    position: str
    department: str
    pay_rate: Optional[Decimal] = None
    employment_type: EmploymentType = "full_time"
    start_date: Optional[date] = None
    start_time: Optional[str] = None
    supervisor: Optional[str] = None
    special_instructions: Optional[str] = None


class OnboardingSession(BaseModel):
    id: UUID
    organization_id: UUID
    job_application_id: Optional[UUID] = None
    manager_id: Optional[UUID] = None
    created_by: Optional[UUID] = None
    token: str
    token_kind: TokenKind
    expires_at: datetime
    candidate_email: str
    subject: CandidateSubject
    status: SessionStatus = SessionStatus.PENDING
    current_step: str
    step_status: dict[str, str] = Field(default_factory=dict)
    skipped_steps: list[str] = Field(default_factory=list)
    form_data: FormData = Field(default_factory=FormData)
    documents: list[DocumentDescriptor] = Field(default_factory=list)
    signatures: dict[str, str] = Field(default_factory=dict)
    edit_requests: list[EditRequest] = Field(default_factory=list)
    review_history: list[ReviewEvent] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[UUID] = None
    review_notes: Optional[str] = None
    employee_id: Optional[UUID] = None
    version: int = 1
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


# ================================
# API schemas
# ================================

class StepState(BaseModel):
    key: str
    title: str
    optional: bool
    status: Literal["pending", "completed"]
    skipped: bool = False


class ApplicantSessionResponse(BaseModel):
    """What the applicant's tablet or browser sees."""
    id: UUID
    status: SessionStatus
    current_step: str
    progress: int
    steps: list[StepState]
    subject: CandidateSubject
    form_data: dict[str, Any]
    documents: list[DocumentDescriptor]
    signature_keys: list[str]
    edit_requests: list[EditRequest]
    expires_at: datetime


class SessionSummary(BaseModel):
    id: UUID
    status: SessionStatus
    token_kind: TokenKind
    candidate_email: str
    first_name: str
    last_name: str
    position: str
    department: str
    current_step: str
    progress: int
    expires_at: datetime
    submitted_at: Optional[datetime] = None
    created_at: datetime


class SessionDetailResponse(BaseModel):
    session: OnboardingSession
    progress: int
    steps: list[StepState]


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]
    total: int


class StepSubmitRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)


class NavigateRequest(BaseModel):
    step: str


class ReviewDecisionRequest(BaseModel):
    notes: Optional[str] = None
    version: Optional[int] = None  # session version the reviewer was looking at


class RequestChangesRequest(BaseModel):
    notes: Optional[str] = None
    edit_requests: list[EditRequest] = Field(default_factory=list)
    version: Optional[int] = None


class WalkInSessionCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    position: str = Field(min_length=1)
    department: str = Field(min_length=1)
    hourly_rate: Decimal = Field(gt=0)
    employment_type: EmploymentType = "full_time"
    start_date: Optional[date] = None
    start_time: Optional[str] = None
    supervisor: Optional[str] = None
    special_instructions: Optional[str] = None
    manager_id: Optional[UUID] = None


class WalkInSessionSummary(BaseModel):
    id: UUID
    access_code: str
    first_name: str
    last_name: str
    position: str
    status: SessionStatus
    progress: int
    expires_at: datetime
    created_at: datetime


class IssuedSessionResponse(BaseModel):
    session_id: UUID
    token: str
    token_kind: TokenKind
    expires_at: datetime
    access_url: Optional[str] = None
