"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator

from adem.features.permissions.schemas import RoleSummary


class UserResponse(BaseModel):
    """Schema for user responses."""
    id: str
    email: str
    name: str
    email_verified: bool
    image: Optional[str] = None
    status: str
    banned: bool
    ban_reason: Optional[str] = None
    ban_expires_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserWithRoles(UserResponse):
    roles: List[RoleSummary] = []


class UserUpdate(BaseModel):
    """Schema for updating user information."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    image: Optional[str] = Field(None, max_length=500)


class SignUpRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def email_normalized(cls, v: str) -> str:
        return v.strip().lower()
