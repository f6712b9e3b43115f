"""
Member administration: role assignment, moderation and the member directory.

Every action targeting another member checks the hierarchy after the
permission guard: the actor must strictly outrank the target, nobody manages
an Admin, and nobody manages themselves.

Status transitions:

    pending  --accept-->  active
    pending  --reject-->  (deleted)
    active | suspended  --ban-->  banned
    banned   --unban-->  active
    any      --delete-->  (deleted)
"""
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, exists, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from adem.core.context import RequestContext
from adem.core.database.engine import UnitOfWork
from adem.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from adem.core.results import ActionResult, service_action
from adem.features.audit.service import AuditAction, AuditResource, record_audit
from adem.features.members.schemas import UserListFilters, UserListPage
from adem.features.permissions import rbac
from adem.features.permissions.catalog import (
    MEMBERS_BAN,
    MEMBERS_CHANGE_ROLE,
    MEMBERS_DELETE,
    MEMBERS_READ,
    MEMBERS_UPDATE,
    is_super_role,
)
from adem.features.permissions.membership import ensure_user_has_role, get_member_role_id
from adem.features.permissions.models import Role, user_roles
from adem.features.permissions.schemas import RoleSummary
from adem.features.users.auth import IdentityProvider
from adem.features.users.models import User, UserStatus
from adem.features.users.schemas import UserWithRoles
from adem.utils import get_logger


log = get_logger(__name__)

CHANGE_ROLE_PERMISSIONS = [MEMBERS_READ, MEMBERS_UPDATE, MEMBERS_CHANGE_ROLE]
BAN_PERMISSIONS = [MEMBERS_READ, MEMBERS_UPDATE, MEMBERS_BAN]
LIFECYCLE_PERMISSIONS = [MEMBERS_READ, MEMBERS_UPDATE, MEMBERS_DELETE]
MANAGE_PERMISSIONS = [MEMBERS_READ, MEMBERS_UPDATE]


# ============================================================================
# Helpers
# ============================================================================

async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def _guard_target(
    ctx: RequestContext,
    target_id: str,
    permissions: Sequence
) -> User:
    """Permission guard, existence check, then hierarchy check."""
    await rbac.require_all_permissions(ctx.db, ctx.user_id, permissions)
    target = await _get_user(ctx.db, target_id)
    await rbac.require_can_manage_user(ctx.db, ctx.user_id, target_id)
    return target


async def _role_names(db: AsyncSession, user_id: str) -> List[str]:
    result = await db.execute(
        select(Role.name)
        .join(user_roles, user_roles.c.role_id == Role.id)
        .where(user_roles.c.user_id == user_id)
        .order_by(Role.priority.desc(), Role.name)
    )
    return list(result.scalars().all())


async def _roles_by_user(db: AsyncSession, user_ids: Sequence[str]) -> Dict[str, List[RoleSummary]]:
    """Assigned roles of several users in one query."""
    if not user_ids:
        return {}
    result = await db.execute(
        select(user_roles.c.user_id, Role)
        .join(Role, Role.id == user_roles.c.role_id)
        .where(user_roles.c.user_id.in_(user_ids))
        .order_by(Role.priority.desc(), Role.name)
    )
    roles: Dict[str, List[RoleSummary]] = {uid: [] for uid in user_ids}
    for user_id, role in result.all():
        roles[user_id].append(RoleSummary.model_validate(role))
    return roles


# ============================================================================
# Role Assignment
# ============================================================================

@service_action("Failed to update the member's roles")
async def set_user_roles(ctx: RequestContext, target_id: str, role_ids: Sequence[str]) -> ActionResult:
    """
    Replace a member's roles with ``role_ids``.

    Every requested role must be manageable by the actor; "Admin" is never
    granted here. An empty request leaves the member with "Membre".
    """
    target = await _guard_target(ctx, target_id, CHANGE_ROLE_PERMISSIONS)

    role_ids = list(dict.fromkeys(role_ids))
    if role_ids:
        result = await ctx.db.execute(select(Role).where(Role.id.in_(role_ids)))
        requested = {role.id: role for role in result.scalars().all()}
        unknown = [rid for rid in role_ids if rid not in requested]
        if unknown:
            raise ValidationError(f"Unknown role id(s): {', '.join(unknown)}")
        if any(is_super_role(role.name) for role in requested.values()):
            raise AuthorizationError("The Admin role cannot be granted here")

        manageable = {role.id for role in await rbac.get_manageable_roles(ctx.db, ctx.user_id)}
        refused = [requested[rid].name for rid in role_ids if rid not in manageable]
        if refused:
            raise AuthorizationError(f"You cannot assign role(s): {', '.join(refused)}")

    old_roles = await _role_names(ctx.db, target_id)

    async with UnitOfWork(ctx.db) as uow:
        await uow.session.execute(delete(user_roles).where(user_roles.c.user_id == target_id))
        if role_ids:
            await uow.session.execute(
                insert(user_roles),
                [{"user_id": target_id, "role_id": rid, "assigned_by": ctx.user_id} for rid in role_ids],
            )
        else:
            await ensure_user_has_role(uow, target_id, ctx.user_id)

    new_roles = await _role_names(ctx.db, target_id)
    await record_audit(
        ctx, AuditAction.ASSIGN, AuditResource.USER, target_id,
        {"old_roles": old_roles, "new_roles": new_roles, "target_user_email": target.email},
    )
    return ActionResult.ok(new_roles)


# ============================================================================
# Moderation
# ============================================================================

@service_action("Failed to ban the member")
async def ban_user(
    ctx: RequestContext,
    target_id: str,
    reason: str,
    expires_at: Optional[datetime] = None
) -> ActionResult:
    """Ban an active or suspended member; ``expires_at`` None is permanent."""
    target = await _guard_target(ctx, target_id, BAN_PERMISSIONS)

    if target.status not in (UserStatus.ACTIVE.value, UserStatus.SUSPENDED.value):
        raise ConflictError(f"Cannot ban a member whose status is '{target.status}'")
    reason = reason.strip()
    if not reason:
        raise ValidationError("A ban reason is required")

    async with UnitOfWork(ctx.db):
        target.status = UserStatus.BANNED.value
        target.banned = True
        target.ban_reason = reason
        target.ban_expires_at = expires_at

    log.info(f"User {target_id} banned by {ctx.user_id}")
    await record_audit(
        ctx, AuditAction.BAN, AuditResource.USER, target_id,
        {
            "reason": reason,
            "type": "temporary" if expires_at else "permanent",
            "expires_at": expires_at.isoformat() if expires_at else None,
            "target_user_email": target.email,
            "target_user_name": target.name,
        },
    )
    return ActionResult.ok()


@service_action("Failed to unban the member")
async def unban_user(ctx: RequestContext, target_id: str) -> ActionResult:
    target = await _guard_target(ctx, target_id, BAN_PERMISSIONS)

    if target.status != UserStatus.BANNED.value:
        raise ConflictError("This member is not banned")

    async with UnitOfWork(ctx.db):
        target.status = UserStatus.ACTIVE.value
        target.banned = False
        target.ban_reason = None
        target.ban_expires_at = None

    await record_audit(
        ctx, AuditAction.UNBAN, AuditResource.USER, target_id,
        {"target_user_email": target.email, "target_user_name": target.name},
    )
    return ActionResult.ok()


@service_action("Failed to accept the member")
async def accept_user(ctx: RequestContext, target_id: str) -> ActionResult:
    """Activate a pending member and grant "Membre" if missing."""
    target = await _guard_target(ctx, target_id, LIFECYCLE_PERMISSIONS)

    if target.status != UserStatus.PENDING.value:
        raise ConflictError("This member is not pending approval")

    async with UnitOfWork(ctx.db) as uow:
        target.status = UserStatus.ACTIVE.value
        member_role_id = await get_member_role_id(uow)
        result = await uow.session.execute(
            select(user_roles.c.role_id).where(
                user_roles.c.user_id == target_id,
                user_roles.c.role_id == member_role_id,
            )
        )
        if result.first() is None:
            await uow.session.execute(
                insert(user_roles).values(user_id=target_id, role_id=member_role_id, assigned_by=ctx.user_id)
            )

    await record_audit(
        ctx, AuditAction.ACCEPT, AuditResource.USER, target_id,
        {"old_status": UserStatus.PENDING.value, "new_status": UserStatus.ACTIVE.value,
         "target_user_email": target.email},
    )
    return ActionResult.ok()


async def _delete_member(
    ctx: RequestContext,
    target: User,
    provider: Optional[IdentityProvider]
) -> None:
    target_id = target.id
    async with UnitOfWork(ctx.db) as uow:
        await uow.session.execute(delete(user_roles).where(user_roles.c.user_id == target_id))
        await uow.session.delete(target)

    if provider is not None:
        try:
            await provider.delete_identity(target_id)
        except Exception:
            log.exception(f"Member {target_id} deleted locally but not at the identity provider")


@service_action("Failed to reject the member")
async def reject_user(
    ctx: RequestContext,
    target_id: str,
    provider: Optional[IdentityProvider] = None
) -> ActionResult:
    """Delete a pending member."""
    target = await _guard_target(ctx, target_id, LIFECYCLE_PERMISSIONS)

    if target.status != UserStatus.PENDING.value:
        raise ConflictError("This member is not pending approval")

    email = target.email
    await _delete_member(ctx, target, provider)
    await record_audit(
        ctx, AuditAction.REJECT, AuditResource.USER, target_id, {"target_user_email": email},
    )
    return ActionResult.ok()


@service_action("Failed to delete the member")
async def delete_user(
    ctx: RequestContext,
    target_id: str,
    provider: Optional[IdentityProvider] = None
) -> ActionResult:
    await rbac.require_all_permissions(ctx.db, ctx.user_id, LIFECYCLE_PERMISSIONS)
    if target_id == ctx.user_id:
        raise ConflictError("You cannot delete your own account")

    target = await _get_user(ctx.db, target_id)
    await rbac.require_can_manage_user(ctx.db, ctx.user_id, target_id)

    email, name = target.email, target.name
    await _delete_member(ctx, target, provider)
    await record_audit(
        ctx, AuditAction.DELETE, AuditResource.USER, target_id,
        {"target_user_email": email, "target_user_name": name},
    )
    return ActionResult.ok()


@service_action("Failed to send the password reset email")
async def reset_user_password(
    ctx: RequestContext,
    target_id: str,
    provider: IdentityProvider
) -> ActionResult:
    """Ask the identity provider to email the member a recovery link."""
    target = await _guard_target(ctx, target_id, MANAGE_PERMISSIONS)

    await provider.request_password_reset(target.email)

    await record_audit(
        ctx, AuditAction.UPDATE, AuditResource.USER, target_id,
        {"action": "reset_password", "target_user_email": target.email},
    )
    return ActionResult.ok()


# ============================================================================
# Directory
# ============================================================================

async def list_users(ctx: RequestContext, filters: Optional[UserListFilters] = None) -> UserListPage:
    """
    Filtered, sorted, paginated member list with each member's roles.

    Raises:
        AuthorizationError: caller lacks ``members:read``
    """
    filters = filters or UserListFilters()
    await rbac.require_permission(ctx.db, ctx.user_id, MEMBERS_READ)

    conditions = []
    if filters.search:
        pattern = f"%{filters.search.strip()}%"
        conditions.append(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    if filters.status:
        conditions.append(User.status == filters.status.value)
    if filters.role_id:
        conditions.append(
            exists().where(
                user_roles.c.user_id == User.id,
                user_roles.c.role_id == filters.role_id,
            )
        )

    total = (
        await ctx.db.execute(select(func.count()).select_from(User).where(*conditions))
    ).scalar_one()

    column = {"name": User.name, "email": User.email, "created_at": User.created_at}[filters.sort_by]
    order = column.asc() if filters.sort_order == "asc" else column.desc()
    result = await ctx.db.execute(
        select(User)
        .where(*conditions)
        .order_by(order, User.id)
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit)
    )
    users = list(result.scalars().all())
    roles = await _roles_by_user(ctx.db, [u.id for u in users])

    return UserListPage(
        users=[
            UserWithRoles.model_validate(u).model_copy(update={"roles": roles[u.id]})
            for u in users
        ],
        total=total,
        page=filters.page,
        limit=filters.limit,
        total_pages=math.ceil(total / filters.limit),
    )


async def get_user(ctx: RequestContext, user_id: str) -> UserWithRoles:
    await rbac.require_permission(ctx.db, ctx.user_id, MEMBERS_READ)
    user = await _get_user(ctx.db, user_id)
    roles = await _roles_by_user(ctx.db, [user_id])
    return UserWithRoles.model_validate(user).model_copy(update={"roles": roles[user_id]})


async def list_all_roles(ctx: RequestContext) -> List[RoleSummary]:
    """Every role, for the directory's role filter."""
    await rbac.require_all_permissions(ctx.db, ctx.user_id, MANAGE_PERMISSIONS)
    result = await ctx.db.execute(select(Role).order_by(Role.priority.desc(), Role.name))
    return [RoleSummary.model_validate(r) for r in result.scalars().all()]


async def get_assignable_roles(ctx: RequestContext) -> List[RoleSummary]:
    """Roles the caller may grant to members they outrank."""
    await rbac.require_all_permissions(ctx.db, ctx.user_id, CHANGE_ROLE_PERMISSIONS)
    return [RoleSummary.model_validate(r) for r in await rbac.get_manageable_roles(ctx.db, ctx.user_id)]


async def can_manage_members(ctx: RequestContext, user_ids: Sequence[str]) -> Dict[str, bool]:
    """Batch hierarchy check for the directory; the caller is left out."""
    await rbac.require_all_permissions(ctx.db, ctx.user_id, MANAGE_PERMISSIONS)
    return await rbac.can_manage_users(ctx.db, ctx.user_id, user_ids)
