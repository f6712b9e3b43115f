"""
Pydantic schemas for the audit log viewer.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class AuditLogFilters(BaseModel):
    """Query filters; every field is optional."""
    action: Optional[str] = None
    resource: Optional[str] = None
    user_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class AuditLogEntry(BaseModel):
    id: str
    user_id: Optional[str]
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    action: str
    resource: str
    resource_id: Optional[str]
    resource_name: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    ip_address: str
    user_agent: str
    created_at: datetime


class AuditLogPage(BaseModel):
    """Schema for paginated audit log list."""
    logs: List[AuditLogEntry]
    total: int
    page: int
    limit: int
    total_pages: int
