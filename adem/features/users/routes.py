"""
Current-member routes and sign-up.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from adem.core.context import RequestContext
from adem.core.database.engine import get_db
from adem.core.results import render
from adem.features.invitations.service import sign_up_with_whitelist
from adem.features.permissions.schemas import UserPermissionsResponse
from adem.features.users import service
from adem.features.users.auth import IdentityProvider
from adem.features.users.dependencies import get_client_info, get_identity_provider, get_request_context
from adem.features.users.schemas import SignUpRequest, UserUpdate, UserWithRoles


Context = Annotated[RequestContext, Depends(get_request_context)]
Provider = Annotated[IdentityProvider, Depends(get_identity_provider)]

router = APIRouter(tags=["users"])
auth_router = APIRouter(tags=["auth"])


@router.get("", response_model=UserWithRoles)
async def get_current_user_profile(ctx: Context):
    """Get current authenticated user's profile."""
    return await service.get_profile(ctx)


@router.get("/permissions", response_model=UserPermissionsResponse)
async def get_current_user_permissions(ctx: Context):
    return await service.get_my_permissions(ctx)


@router.patch("")
async def update_current_user_profile(body: UserUpdate, ctx: Context):
    """Update current user's profile."""
    return render(await service.update_profile(ctx, body))


@router.delete("")
async def delete_current_user(ctx: Context, provider: Provider):
    return render(await service.delete_account(ctx, provider))


@auth_router.post("/sign-up", status_code=status.HTTP_201_CREATED)
async def sign_up(
    body: SignUpRequest,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    provider: Provider,
):
    """Create an account; whitelisted emails are activated immediately."""
    ip_address, user_agent = get_client_info(request)
    ctx = RequestContext(db=db, user_id="", ip_address=ip_address, user_agent=user_agent)
    return render(await sign_up_with_whitelist(ctx, body, provider), status.HTTP_201_CREATED)
