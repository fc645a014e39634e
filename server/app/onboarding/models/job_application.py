"""Job application models for the property job board."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from .session import EmploymentType


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"


class JobApplicationCreate(BaseModel):
    """Schema for submitting a job application."""
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    position: str = Field(min_length=1)
    department: str = Field(min_length=1)
    cover_letter: Optional[str] = None


class JobOffer(BaseModel):
    pay_rate: Decimal
    start_date: Optional[date] = None
    start_time: Optional[str] = None
    supervisor: Optional[str] = None
    employment_type: EmploymentType = "full_time"
    special_instructions: Optional[str] = None
    manager_id: Optional[UUID] = None


class JobApplication(BaseModel):
    id: UUID
    organization_id: UUID
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    position: str
    department: str
    cover_letter: Optional[str] = None
    status: ApplicationStatus = ApplicationStatus.PENDING
    review_notes: Optional[str] = None
    reviewed_by: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    job_offer: Optional[JobOffer] = None
    onboarding_session_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime


class JobApplicationListResponse(BaseModel):
    applications: list[JobApplication]
    total: int


class ApplicationNotesRequest(BaseModel):
    notes: Optional[str] = None


class ApplicationSubmitResponse(BaseModel):
    """Response after successfully submitting an application."""
    success: bool
    message: str
    application_id: UUID


class ApplicationApproveResponse(BaseModel):
    application: JobApplication
    onboarding_session_id: UUID
    expires_at: datetime
