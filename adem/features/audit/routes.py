"""
Audit log viewer routes.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, Query

from adem.core.context import RequestContext
from adem.features.audit import service
from adem.features.audit.schemas import AuditLogFilters, AuditLogPage
from adem.features.users.dependencies import get_request_context


Context = Annotated[RequestContext, Depends(get_request_context)]

router = APIRouter()


@router.get("", response_model=AuditLogPage)
async def list_audit_logs(ctx: Context, filters: Annotated[AuditLogFilters, Query()]):
    """Audit log, newest first."""
    return await service.list_audit_logs(ctx, filters)


@router.get("/actions", response_model=List[str])
async def list_actions(ctx: Context):
    return await service.get_available_actions(ctx)


@router.get("/resources", response_model=List[str])
async def list_resources(ctx: Context):
    return await service.get_available_resources(ctx)
