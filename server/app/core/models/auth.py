from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel

UserRole = Literal["admin", "hr", "manager", "employee"]


class TokenPayload(BaseModel):
    sub: str  # user_id
    email: str
    role: UserRole
    exp: int


class CurrentUser(BaseModel):
    id: UUID
    email: str
    role: UserRole
    organization_id: Optional[UUID] = None
    name: Optional[str] = None
