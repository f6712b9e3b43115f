"""
Member administration API routes.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, Query

from adem.core.context import RequestContext
from adem.core.results import render
from adem.features.members import service
from adem.features.members.schemas import (
    BanUserRequest,
    ManageCheckRequest,
    ManageCheckResponse,
    SetUserRolesRequest,
    UserListFilters,
    UserListPage,
)
from adem.features.permissions.schemas import RoleSummary
from adem.features.users.auth import IdentityProvider
from adem.features.users.dependencies import get_identity_provider, get_request_context
from adem.features.users.schemas import UserWithRoles


Context = Annotated[RequestContext, Depends(get_request_context)]
Provider = Annotated[IdentityProvider, Depends(get_identity_provider)]

router = APIRouter()


@router.get("", response_model=UserListPage)
async def list_users(ctx: Context, filters: Annotated[UserListFilters, Query()]):
    """List members with their roles; filter by search, status or role."""
    return await service.list_users(ctx, filters)


@router.get("/roles", response_model=List[RoleSummary])
async def list_all_roles(ctx: Context):
    return await service.list_all_roles(ctx)


@router.get("/roles/assignable", response_model=List[RoleSummary])
async def get_assignable_roles(ctx: Context):
    """Roles the current user may grant."""
    return await service.get_assignable_roles(ctx)


@router.post("/can-manage", response_model=ManageCheckResponse)
async def can_manage_members(body: ManageCheckRequest, ctx: Context):
    return ManageCheckResponse(results=await service.can_manage_members(ctx, body.user_ids))


@router.get("/{user_id}", response_model=UserWithRoles)
async def get_user(user_id: str, ctx: Context):
    return await service.get_user(ctx, user_id)


@router.put("/{user_id}/roles")
async def set_user_roles(user_id: str, body: SetUserRolesRequest, ctx: Context):
    return render(await service.set_user_roles(ctx, user_id, body.role_ids))


@router.post("/{user_id}/ban")
async def ban_user(user_id: str, body: BanUserRequest, ctx: Context):
    return render(await service.ban_user(ctx, user_id, body.reason, body.expires_at))


@router.post("/{user_id}/unban")
async def unban_user(user_id: str, ctx: Context):
    return render(await service.unban_user(ctx, user_id))


@router.post("/{user_id}/accept")
async def accept_user(user_id: str, ctx: Context):
    return render(await service.accept_user(ctx, user_id))


@router.post("/{user_id}/reject")
async def reject_user(user_id: str, ctx: Context, provider: Provider):
    return render(await service.reject_user(ctx, user_id, provider))


@router.delete("/{user_id}")
async def delete_user(user_id: str, ctx: Context, provider: Provider):
    return render(await service.delete_user(ctx, user_id, provider))


@router.post("/{user_id}/reset-password")
async def reset_user_password(user_id: str, ctx: Context, provider: Provider):
    """Send the member a password recovery email."""
    return render(await service.reset_user_password(ctx, user_id, provider))
