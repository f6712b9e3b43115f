"""
Pydantic schemas for member administration.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from adem.features.users.models import UserStatus
from adem.features.users.schemas import UserWithRoles


class UserListFilters(BaseModel):
    search: Optional[str] = Field(None, max_length=255, description="Substring of the name or email")
    status: Optional[UserStatus] = None
    role_id: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)
    sort_by: Literal["name", "email", "created_at"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class UserListPage(BaseModel):
    users: List[UserWithRoles]
    total: int
    page: int
    limit: int
    total_pages: int


class SetUserRolesRequest(BaseModel):
    role_ids: List[str] = Field(default_factory=list)


class BanUserRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    expires_at: Optional[datetime] = Field(None, description="Null for a permanent ban")


class ManageCheckRequest(BaseModel):
    user_ids: List[str] = Field(..., max_length=500)


class ManageCheckResponse(BaseModel):
    results: Dict[str, bool]
