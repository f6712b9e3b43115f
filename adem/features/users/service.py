"""
Self-service operations on the current member's own account.
"""
from sqlalchemy import delete

from adem.core.context import RequestContext
from adem.core.database.engine import UnitOfWork
from adem.core.errors import NotFoundError
from adem.core.results import ActionResult, service_action
from adem.features.permissions import rbac
from adem.features.permissions.catalog import is_super_role
from adem.features.permissions.models import user_roles
from adem.features.permissions.schemas import RoleSummary, UserPermissionsResponse
from adem.features.users.auth import IdentityProvider
from adem.features.users.models import User
from adem.features.users.schemas import UserResponse, UserUpdate, UserWithRoles
from adem.utils import get_logger


log = get_logger(__name__)


async def _current_user(ctx: RequestContext) -> User:
    user = await ctx.db.get(User, ctx.user_id, populate_existing=True)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def get_profile(ctx: RequestContext) -> UserWithRoles:
    """The current member with every assigned role, whatever their status."""
    user = await _current_user(ctx)
    roles = await rbac.get_user_roles(ctx.db, ctx.user_id, active_only=False)
    return UserWithRoles.model_validate(user).model_copy(
        update={"roles": [RoleSummary.model_validate(r) for r in roles]}
    )


async def get_my_permissions(ctx: RequestContext) -> UserPermissionsResponse:
    """Effective standing: empty unless the member is active."""
    roles = await rbac.get_user_roles(ctx.db, ctx.user_id)
    permissions = await rbac.get_user_permissions(ctx.db, ctx.user_id)
    return UserPermissionsResponse(
        user_id=ctx.user_id,
        roles=[RoleSummary.model_validate(r) for r in roles],
        permissions=sorted(permissions),
        is_admin=any(is_super_role(r.name) for r in roles),
    )


@service_action("Failed to update the profile")
async def update_profile(ctx: RequestContext, data: UserUpdate) -> ActionResult:
    user = await _current_user(ctx)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if changes:
        async with UnitOfWork(ctx.db) as uow:
            for field, value in changes.items():
                setattr(user, field, value)
            await uow.session.flush()
            await uow.session.refresh(user)
    return ActionResult.ok(UserResponse.model_validate(user))


@service_action("Failed to delete the account")
async def delete_account(ctx: RequestContext, provider: IdentityProvider) -> ActionResult:
    """Delete the current member's own account, locally and at the provider."""
    user = await _current_user(ctx)
    email = user.email

    await provider.delete_identity(ctx.user_id)
    async with UnitOfWork(ctx.db) as uow:
        await uow.session.execute(delete(user_roles).where(user_roles.c.user_id == ctx.user_id))
        await uow.session.delete(user)

    log.info(f"Member {email} deleted their account")
    return ActionResult.ok()
