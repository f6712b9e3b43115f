"""
Pydantic schemas for permission and role management.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from adem.features.permissions.catalog import as_key


HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PermissionCheckRequest(BaseModel):
    """Check one ``"resource:action"`` key for the current user."""
    permission: str = Field(..., description="Permission key, e.g. 'members:ban'")

    @field_validator("permission")
    @classmethod
    def permission_in_catalog(cls, v: str) -> str:
        return str(as_key(v))


class PermissionCheckResponse(BaseModel):
    permission: str
    granted: bool


# ============================================================================
# Role Schemas
# ============================================================================

class RoleCreate(BaseModel):
    """Schema for creating a new role."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000)
    color: str = Field("#6366f1", pattern=HEX_COLOR)
    priority: int = Field(0, ge=0, le=1000)
    permission_ids: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def name_stripped(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Role name must not be blank")
        return v


class RoleUpdate(BaseModel):
    """Partial update; only the fields provided are changed."""
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    priority: Optional[int] = Field(None, ge=0, le=1000)

    @field_validator("name")
    @classmethod
    def name_stripped(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Role name must not be blank")
        return v


class RolePermissionsUpdate(BaseModel):
    permission_ids: List[str]


class RoleResponse(BaseModel):
    """Schema for role response."""
    id: str
    name: str
    description: Optional[str] = None
    color: str
    priority: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleSummary(BaseModel):
    """Role as embedded in member listings."""
    id: str
    name: str
    color: str
    priority: int

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []


class RoleWithCounts(RoleResponse):
    """Role as listed on the roles page."""
    member_count: int = 0
    permission_count: int = 0


class RoleMember(BaseModel):
    """A user holding a role, with the edge's provenance."""
    id: str
    name: str
    email: str
    image: Optional[str] = None
    status: str
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None


# ============================================================================
# Mutation Payloads
# ============================================================================

class RoleDeleted(BaseModel):
    role_name: str
    affected_users: int


class UserPermissionsResponse(BaseModel):
    """Effective roles and permissions of a user."""
    user_id: str
    roles: List[RoleSummary] = []
    permissions: List[str] = []
    is_admin: bool = False
