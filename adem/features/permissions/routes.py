"""
Role and permission API routes.

Mutations answer with the ``ActionResult`` envelope; reads answer with the
resource itself. Guards run in the service layer.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, status

from adem.core.context import RequestContext
from adem.core.results import render
from adem.features.permissions import rbac, service
from adem.features.permissions.schemas import (
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionResponse,
    RoleCreate,
    RoleMember,
    RolePermissionsUpdate,
    RoleUpdate,
    RoleWithCounts,
    RoleWithPermissions,
)
from adem.features.users.dependencies import get_request_context


Context = Annotated[RequestContext, Depends(get_request_context)]

permission_router = APIRouter()
role_router = APIRouter()


# ============================================================================
# Permission Routes
# ============================================================================

@permission_router.get("", response_model=List[PermissionResponse])
async def list_permissions(ctx: Context):
    """The permission catalog."""
    return await service.list_permissions(ctx)


@permission_router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(body: PermissionCheckRequest, ctx: Context):
    """Check whether the current user holds a permission."""
    granted = await rbac.has_permission(ctx.db, ctx.user_id, body.permission)
    return PermissionCheckResponse(permission=body.permission, granted=granted)


# ============================================================================
# Role Routes
# ============================================================================

@role_router.get("", response_model=List[RoleWithCounts])
async def list_roles(ctx: Context):
    return await service.list_roles(ctx)


@role_router.post("", status_code=status.HTTP_201_CREATED)
async def create_role(body: RoleCreate, ctx: Context):
    return render(await service.create_role(ctx, body), status.HTTP_201_CREATED)


@role_router.get("/{role_id}", response_model=RoleWithPermissions)
async def get_role(role_id: str, ctx: Context):
    return await service.get_role(ctx, role_id)


@role_router.patch("/{role_id}")
async def update_role(role_id: str, body: RoleUpdate, ctx: Context):
    return render(await service.update_role(ctx, role_id, body))


@role_router.delete("/{role_id}")
async def delete_role(role_id: str, ctx: Context):
    return render(await service.delete_role(ctx, role_id))


@role_router.put("/{role_id}/permissions")
async def update_role_permissions(role_id: str, body: RolePermissionsUpdate, ctx: Context):
    """Replace the role's permission set."""
    return render(await service.update_role_permissions(ctx, role_id, body.permission_ids))


@role_router.get("/{role_id}/members", response_model=List[RoleMember])
async def get_role_members(role_id: str, ctx: Context):
    return await service.get_role_members(ctx, role_id)


@role_router.get("/{role_id}/members/count")
async def count_role_members(role_id: str, ctx: Context):
    return {"count": await service.count_role_members(ctx, role_id)}


@role_router.delete("/{role_id}/members/{user_id}")
async def remove_user_from_role(role_id: str, user_id: str, ctx: Context):
    return render(await service.remove_user_from_role(ctx, user_id, role_id))
