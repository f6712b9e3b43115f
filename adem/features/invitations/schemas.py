"""
Pydantic schemas for the whitelist.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator


def normalize_email(email: str) -> str:
    return email.strip().lower()


class WhitelistEntryResponse(BaseModel):
    id: str
    email: str
    added_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WhitelistAdd(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def email_normalized(cls, v: str) -> str:
        return normalize_email(v)


class WhitelistBatchAdd(BaseModel):
    emails: List[EmailStr] = Field(..., min_length=1, max_length=1000)


class WhitelistBatchResult(BaseModel):
    added_count: int
    skipped_count: int
