"""
Role and permission management.

Mutations guard first, write inside a single unit of work, record the audit
entry once committed and return an ``ActionResult``. Reads raise
``PortalError`` subclasses and return plain data.
"""
from typing import Dict, List, Sequence

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from adem.core.context import RequestContext
from adem.core.database.engine import UnitOfWork
from adem.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from adem.core.results import ActionResult, service_action
from adem.features.audit.service import AuditAction, AuditResource, record_audit
from adem.features.permissions import rbac
from adem.features.permissions.catalog import (
    MEMBER_ROLE,
    MEMBERS_READ,
    MEMBERS_UPDATE,
    PROTECTED_ROLES,
    ROLES_CREATE,
    ROLES_DELETE,
    ROLES_READ,
    ROLES_UPDATE,
    is_super_role,
)
from adem.features.permissions.membership import ensure_user_has_role
from adem.features.permissions.models import Permission, Role, role_permissions, user_roles
from adem.features.permissions.schemas import (
    PermissionResponse,
    RoleCreate,
    RoleDeleted,
    RoleMember,
    RoleResponse,
    RoleUpdate,
    RoleWithCounts,
    RoleWithPermissions,
)
from adem.features.users.models import User
from adem.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Helpers
# ============================================================================

async def _get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id, populate_existing=True)
    if role is None:
        raise NotFoundError("Role not found")
    return role


async def _role_name_taken(db: AsyncSession, name: str) -> bool:
    result = await db.execute(select(Role.id).where(Role.name == name))
    return result.first() is not None


async def _resolve_permissions(db: AsyncSession, permission_ids: Sequence[str]) -> Dict[str, str]:
    """
    Map permission ids to their names.

    Raises:
        ValidationError: one of the ids is not a catalog permission
    """
    if not permission_ids:
        return {}
    result = await db.execute(
        select(Permission.id, Permission.name).where(Permission.id.in_(permission_ids))
    )
    found = {pid: name for pid, name in result.all()}
    unknown = [pid for pid in permission_ids if pid not in found]
    if unknown:
        raise ValidationError(f"Unknown permission id(s): {', '.join(unknown)}")
    return found


async def _role_permission_names(db: AsyncSession, role_id: str) -> List[str]:
    result = await db.execute(
        select(Permission.name)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(role_permissions.c.role_id == role_id)
        .order_by(Permission.name)
    )
    return list(result.scalars().all())


# ============================================================================
# Role Mutations
# ============================================================================

@service_action("Failed to create the role")
async def create_role(ctx: RequestContext, data: RoleCreate) -> ActionResult:
    """
    Create a role with its initial permission set.

    Raises (as failure envelope):
        AuthorizationError: caller lacks roles:read + roles:create
        ValidationError: reserved or duplicate name, unknown permission id
    """
    await rbac.require_all_permissions(ctx.db, ctx.user_id, [ROLES_READ, ROLES_CREATE])

    if is_super_role(data.name):
        raise ValidationError(f"'{data.name}' is a reserved role name")
    if await _role_name_taken(ctx.db, data.name):
        raise ValidationError(f"A role named '{data.name}' already exists")

    permission_ids = list(dict.fromkeys(data.permission_ids))
    await _resolve_permissions(ctx.db, permission_ids)

    async with UnitOfWork(ctx.db) as uow:
        role = Role(
            name=data.name,
            description=data.description,
            color=data.color,
            priority=data.priority,
        )
        uow.session.add(role)
        await uow.session.flush()
        if permission_ids:
            await uow.session.execute(
                insert(role_permissions),
                [{"role_id": role.id, "permission_id": pid} for pid in permission_ids],
            )
        await uow.session.refresh(role)

    log.info(f"Role {role.name!r} created by {ctx.user_id}")
    await record_audit(
        ctx, AuditAction.CREATE, AuditResource.ROLE, role.id,
        {"name": role.name, "priority": role.priority, "permission_count": len(permission_ids)},
    )
    return ActionResult.ok(RoleResponse.model_validate(role))


@service_action("Failed to update the role")
async def update_role(ctx: RequestContext, role_id: str, data: RoleUpdate) -> ActionResult:
    """
    Update a role's name, description, color or priority.

    The Admin role is immutable and "Membre" keeps its name.
    """
    await rbac.require_all_permissions(ctx.db, ctx.user_id, [ROLES_READ, ROLES_UPDATE])

    role = await _get_role(ctx.db, role_id)
    if is_super_role(role.name):
        raise AuthorizationError(f"The {role.name} role cannot be modified")

    patch = data.model_dump(exclude_unset=True)
    for field in ("name", "color", "priority"):
        if patch.get(field, "") is None:
            patch.pop(field)

    new_name = patch.get("name")
    if new_name is not None and new_name != role.name:
        if is_super_role(new_name):
            raise AuthorizationError(f"'{new_name}' is a reserved role name")
        if role.name == MEMBER_ROLE:
            raise ConflictError(f"The {MEMBER_ROLE} role cannot be renamed")
        if await _role_name_taken(ctx.db, new_name):
            raise ValidationError(f"A role named '{new_name}' already exists")

    changes = {
        field: {"from": getattr(role, field), "to": value}
        for field, value in patch.items()
        if getattr(role, field) != value
    }
    if not changes:
        return ActionResult.ok(RoleResponse.model_validate(role))

    async with UnitOfWork(ctx.db) as uow:
        for field, change in changes.items():
            setattr(role, field, change["to"])
        await uow.session.flush()
        await uow.session.refresh(role)

    await record_audit(
        ctx, AuditAction.UPDATE, AuditResource.ROLE, role.id,
        {"role_name": role.name, "changes": changes},
    )
    return ActionResult.ok(RoleResponse.model_validate(role))


@service_action("Failed to delete the role")
async def delete_role(ctx: RequestContext, role_id: str) -> ActionResult:
    """
    Delete a role, re-assigning "Membre" to every holder left without a role.

    The Admin and Membre roles are protected.
    """
    await rbac.require_all_permissions(ctx.db, ctx.user_id, [ROLES_READ, ROLES_DELETE])

    role = await _get_role(ctx.db, role_id)
    if role.name in PROTECTED_ROLES:
        raise ConflictError(f"The {role.name} role is protected and cannot be deleted")
    role_name = role.name

    async with UnitOfWork(ctx.db) as uow:
        result = await uow.session.execute(
            select(user_roles.c.user_id).where(user_roles.c.role_id == role_id)
        )
        affected = list(result.scalars().all())

        await uow.session.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
        await uow.session.execute(delete(user_roles).where(user_roles.c.role_id == role_id))
        for user_id in affected:
            await ensure_user_has_role(uow, user_id)
        await uow.session.delete(role)

    log.info(f"Role {role_name!r} deleted by {ctx.user_id}, {len(affected)} member(s) affected")
    await record_audit(
        ctx, AuditAction.DELETE, AuditResource.ROLE, role_id,
        {"role_name": role_name, "affected_users": len(affected)},
    )
    return ActionResult.ok(RoleDeleted(role_name=role_name, affected_users=len(affected)))


@service_action("Failed to update the role permissions")
async def update_role_permissions(
    ctx: RequestContext,
    role_id: str,
    permission_ids: Sequence[str]
) -> ActionResult:
    """Replace a role's permission set with ``permission_ids``."""
    await rbac.require_all_permissions(ctx.db, ctx.user_id, [ROLES_READ, ROLES_UPDATE])

    role = await _get_role(ctx.db, role_id)
    if is_super_role(role.name):
        raise AuthorizationError(f"The permissions of the {role.name} role cannot be modified")

    permission_ids = list(dict.fromkeys(permission_ids))
    requested = await _resolve_permissions(ctx.db, permission_ids)
    before = await _role_permission_names(ctx.db, role_id)

    async with UnitOfWork(ctx.db) as uow:
        await uow.session.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
        if permission_ids:
            await uow.session.execute(
                insert(role_permissions),
                [{"role_id": role_id, "permission_id": pid} for pid in permission_ids],
            )

    after = sorted(requested.values())
    await record_audit(
        ctx, AuditAction.UPDATE, AuditResource.PERMISSION, role_id,
        {
            "role_name": role.name,
            "before": before,
            "after": after,
            "added": sorted(set(after) - set(before)),
            "removed": sorted(set(before) - set(after)),
        },
    )
    return ActionResult.ok(after)


@service_action("Failed to remove the member from the role")
async def remove_user_from_role(ctx: RequestContext, target_id: str, role_id: str) -> ActionResult:
    """
    Remove one role from a member; "Membre" is re-assigned if none is left.
    """
    await rbac.require_all_permissions(
        ctx.db, ctx.user_id, [ROLES_READ, ROLES_DELETE, MEMBERS_READ, MEMBERS_UPDATE]
    )
    await rbac.require_can_manage_user(ctx.db, ctx.user_id, target_id)

    role = await _get_role(ctx.db, role_id)
    if is_super_role(role.name):
        raise AuthorizationError(f"The {role.name} role cannot be removed here")

    result = await ctx.db.execute(
        select(user_roles.c.user_id).where(
            user_roles.c.user_id == target_id,
            user_roles.c.role_id == role_id,
        )
    )
    if result.first() is None:
        raise NotFoundError("This member does not hold that role")

    async with UnitOfWork(ctx.db) as uow:
        await uow.session.execute(
            delete(user_roles).where(
                user_roles.c.user_id == target_id,
                user_roles.c.role_id == role_id,
            )
        )
        await ensure_user_has_role(uow, target_id, ctx.user_id)

    await record_audit(
        ctx, AuditAction.REMOVE, AuditResource.ROLE, role_id,
        {"role_name": role.name, "target_user_id": target_id},
    )
    return ActionResult.ok()


# ============================================================================
# Reads
# ============================================================================

async def list_roles(ctx: RequestContext) -> List[RoleWithCounts]:
    """All roles with their member and permission counts, most senior first."""
    await rbac.require_permission(ctx.db, ctx.user_id, ROLES_READ)

    member_count = (
        select(func.count())
        .select_from(user_roles)
        .where(user_roles.c.role_id == Role.id)
        .scalar_subquery()
    )
    permission_count = (
        select(func.count())
        .select_from(role_permissions)
        .where(role_permissions.c.role_id == Role.id)
        .scalar_subquery()
    )
    result = await ctx.db.execute(
        select(Role, member_count, permission_count).order_by(Role.priority.desc(), Role.name)
    )
    return [
        RoleWithCounts.model_validate(role).model_copy(
            update={"member_count": members, "permission_count": permissions}
        )
        for role, members, permissions in result.all()
    ]


async def get_role(ctx: RequestContext, role_id: str) -> RoleWithPermissions:
    await rbac.require_permission(ctx.db, ctx.user_id, ROLES_READ)

    role = await _get_role(ctx.db, role_id)
    result = await ctx.db.execute(
        select(Permission)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(role_permissions.c.role_id == role_id)
        .order_by(Permission.resource, Permission.action)
    )
    permissions = [PermissionResponse.model_validate(p) for p in result.scalars().all()]
    return RoleWithPermissions.model_validate(role).model_copy(update={"permissions": permissions})


async def get_role_members(ctx: RequestContext, role_id: str) -> List[RoleMember]:
    await rbac.require_permission(ctx.db, ctx.user_id, ROLES_READ)
    await _get_role(ctx.db, role_id)

    result = await ctx.db.execute(
        select(User, user_roles.c.assigned_at, user_roles.c.assigned_by)
        .join(user_roles, user_roles.c.user_id == User.id)
        .where(user_roles.c.role_id == role_id)
        .order_by(User.name)
    )
    return [
        RoleMember(
            id=user.id,
            name=user.name,
            email=user.email,
            image=user.image,
            status=user.status,
            assigned_at=assigned_at,
            assigned_by=assigned_by,
        )
        for user, assigned_at, assigned_by in result.all()
    ]


async def count_role_members(ctx: RequestContext, role_id: str) -> int:
    await rbac.require_permission(ctx.db, ctx.user_id, ROLES_READ)
    result = await ctx.db.execute(
        select(func.count()).select_from(user_roles).where(user_roles.c.role_id == role_id)
    )
    return result.scalar_one()


async def list_permissions(ctx: RequestContext) -> List[PermissionResponse]:
    """The permission catalog, grouped by resource."""
    await rbac.require_permission(ctx.db, ctx.user_id, ROLES_READ)
    result = await ctx.db.execute(select(Permission).order_by(Permission.resource, Permission.action))
    return [PermissionResponse.model_validate(p) for p in result.scalars().all()]
