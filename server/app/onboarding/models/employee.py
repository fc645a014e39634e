from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from .session import EmploymentType


class EmployeeAddress(BaseModel):
    street: str
    apartment: Optional[str] = None
    city: str
    state: str
    zip_code: str


class EmployeeRecord(BaseModel):
    """Active employee created from an approved onboarding session."""
    id: UUID
    employee_number: str
    organization_id: UUID
    onboarding_session_id: UUID
    user_id: Optional[UUID] = None
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    position: str
    department: str
    pay_rate: Decimal
    employment_type: EmploymentType
    hire_date: date
    manager_id: Optional[UUID] = None
    address: EmployeeAddress
    emergency_contact: Optional[dict] = None
    created_at: Optional[datetime] = None


class MaterializeResponse(BaseModel):
    employee: EmployeeRecord
    session_id: UUID
    status: str
