"""
Authorization engine: permission resolution, role groups, guards and the
member-management hierarchy.

Every function takes the request's session and a user id and only reads.
Nothing is cached: each call re-reads the current assignments so a revoked
role stops granting capability on the very next check.

Only ``active`` users hold standing. A pending, suspended or banned user
resolves to no roles, hence no permissions, when acting; as a *target* of a
hierarchy check every assigned role counts whatever the status.
"""
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adem.core.errors import AuthorizationError
from adem.features.permissions.catalog import (
    ADMIN_ROLE,
    BUREAU_OR_CA_ROLES,
    CORRECTOR_ROLES,
    MODERATOR_ROLES,
    SUPER_ROLES,
    PermissionLike,
    as_key,
    is_super_role,
)
from adem.features.permissions.models import Permission, Role, role_permissions, user_roles
from adem.features.users.models import User, UserStatus
from adem.utils import get_logger


log = get_logger(__name__)

# (role name, role priority)
Standing = List[Tuple[str, int]]


# ============================================================================
# Roles & Permissions
# ============================================================================

async def get_user_roles(
    db: AsyncSession,
    user_id: str,
    active_only: bool = True
) -> List[Role]:
    """
    Get the roles assigned to a user, highest priority first.

    Args:
        db: Database session
        user_id: User to look up
        active_only: Return nothing unless the user is ``active``

    Returns:
        List of Role objects
    """
    stmt = (
        select(Role)
        .join(user_roles, user_roles.c.role_id == Role.id)
        .where(user_roles.c.user_id == user_id)
        .order_by(Role.priority.desc(), Role.name)
        .execution_options(populate_existing=True)
    )
    if active_only:
        stmt = stmt.join(User, User.id == user_roles.c.user_id).where(
            User.status == UserStatus.ACTIVE.value
        )

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _permission_names(db: AsyncSession, role_ids: Sequence[str]) -> Set[str]:
    if not role_ids:
        return set()

    stmt = (
        select(Permission.name)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(role_permissions.c.role_id.in_(role_ids))
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def get_user_permissions(db: AsyncSession, user_id: str) -> Set[str]:
    """
    Union of the ``"resource:action"`` keys granted by the user's roles.

    This is the explicit edge set; super-role holders pass ``has_permission``
    even for keys missing here.
    """
    roles = await get_user_roles(db, user_id)
    return await _permission_names(db, [r.id for r in roles])


async def _effective_permissions(db: AsyncSession, user_id: str) -> Tuple[bool, Set[str]]:
    """Returns (holds a super-role, explicit permission names)."""
    roles = await get_user_roles(db, user_id)
    if any(is_super_role(r.name) for r in roles):
        return True, set()
    return False, await _permission_names(db, [r.id for r in roles])


async def has_permission(db: AsyncSession, user_id: str, permission: PermissionLike) -> bool:
    """
    Check whether a user holds a permission.

    Raises:
        ValueError: ``permission`` is text that is not a catalog key
    """
    key = str(as_key(permission))
    is_super, names = await _effective_permissions(db, user_id)
    if is_super:
        log.debug(f"User {user_id} holds a super-role - granted {key}")
        return True
    granted = key in names
    if not granted:
        log.debug(f"User {user_id} denied {key}")
    return granted


async def has_all_permissions(
    db: AsyncSession,
    user_id: str,
    permissions: Iterable[PermissionLike]
) -> bool:
    keys = [str(as_key(p)) for p in permissions]
    is_super, names = await _effective_permissions(db, user_id)
    return is_super or all(k in names for k in keys)


async def has_any_permission(
    db: AsyncSession,
    user_id: str,
    permissions: Iterable[PermissionLike]
) -> bool:
    keys = [str(as_key(p)) for p in permissions]
    is_super, names = await _effective_permissions(db, user_id)
    return is_super or any(k in names for k in keys)


can = has_permission
can_all = has_all_permissions
can_any = has_any_permission


async def has_any_role(db: AsyncSession, user_id: str, role_names: Iterable[str]) -> bool:
    wanted = set(role_names)
    roles = await get_user_roles(db, user_id)
    return any(r.name in wanted for r in roles)


async def has_role(db: AsyncSession, user_id: str, role_name: str) -> bool:
    return await has_any_role(db, user_id, [role_name])


async def is_admin(db: AsyncSession, user_id: str) -> bool:
    return await has_role(db, user_id, ADMIN_ROLE)


async def is_moderator(db: AsyncSession, user_id: str) -> bool:
    """Admin or Moderateur."""
    return await has_any_role(db, user_id, MODERATOR_ROLES)


async def is_bureau_or_ca(db: AsyncSession, user_id: str) -> bool:
    """Admin, Bureau or CA."""
    return await has_any_role(db, user_id, BUREAU_OR_CA_ROLES)


async def is_corrector(db: AsyncSession, user_id: str) -> bool:
    """Admin, SuperCorrecteur or Correcteur."""
    return await has_any_role(db, user_id, CORRECTOR_ROLES)


async def get_primary_role(db: AsyncSession, user_id: str) -> Optional[Role]:
    """Highest-priority role of the user, or None."""
    roles = await get_user_roles(db, user_id)
    return roles[0] if roles else None


async def get_user_max_priority(db: AsyncSession, user_id: str) -> Optional[int]:
    primary = await get_primary_role(db, user_id)
    return primary.priority if primary else None


# ============================================================================
# Guards
# ============================================================================

async def require_permission(db: AsyncSession, user_id: str, permission: PermissionLike) -> None:
    """
    Guard for protected operations: raise unless the user holds the permission.

    Raises:
        AuthorizationError: permission missing
    """
    if not await has_permission(db, user_id, permission):
        raise AuthorizationError(f"Forbidden: permission '{as_key(permission)}' required")


async def require_all_permissions(
    db: AsyncSession,
    user_id: str,
    permissions: Sequence[PermissionLike]
) -> None:
    if not await has_all_permissions(db, user_id, permissions):
        names = ", ".join(str(as_key(p)) for p in permissions)
        raise AuthorizationError(f"Forbidden: all of the following permissions are required: {names}")


async def require_any_permission(
    db: AsyncSession,
    user_id: str,
    permissions: Sequence[PermissionLike]
) -> None:
    if not await has_any_permission(db, user_id, permissions):
        names = ", ".join(str(as_key(p)) for p in permissions)
        raise AuthorizationError(f"Forbidden: one of the following permissions is required: {names}")


async def require_any_role(db: AsyncSession, user_id: str, role_names: Sequence[str]) -> None:
    if not await has_any_role(db, user_id, role_names):
        raise AuthorizationError(f"Forbidden: one of the following roles is required: {', '.join(role_names)}")


async def require_role(db: AsyncSession, user_id: str, role_name: str) -> None:
    if not await has_role(db, user_id, role_name):
        raise AuthorizationError(f"Forbidden: role '{role_name}' required")


# ============================================================================
# Hierarchy
# ============================================================================

def outranks(actor: Standing, target: Standing) -> bool:
    """
    Decide whether an actor may manage a target from their (name, priority)
    role lists.

    - a super-role target is never manageable
    - a super-role actor manages everyone else
    - otherwise the actor's highest priority must be strictly greater than
      the target's; an empty role list counts as minus infinity
    """
    if any(is_super_role(name) for name, _ in target):
        return False
    if any(is_super_role(name) for name, _ in actor):
        return True

    actor_max = max((priority for _, priority in actor), default=None)
    if actor_max is None:
        return False
    target_max = max((priority for _, priority in target), default=None)
    return target_max is None or actor_max > target_max


async def can_manage_users(
    db: AsyncSession,
    actor_id: str,
    target_ids: Iterable[str]
) -> Dict[str, bool]:
    """
    Batch hierarchy check.

    Issues two queries whatever the number of targets: the actor's roles,
    then every target's roles in one outer join. The actor is left out of the
    result even if listed; unknown target ids map to False.
    """
    targets = list(dict.fromkeys(t for t in target_ids if t != actor_id))
    if not targets:
        return {}

    actor_roles = await get_user_roles(db, actor_id)
    actor: Standing = [(r.name, r.priority) for r in actor_roles]

    stmt = (
        select(User.id, Role.name, Role.priority)
        .select_from(User)
        .outerjoin(user_roles, user_roles.c.user_id == User.id)
        .outerjoin(Role, Role.id == user_roles.c.role_id)
        .where(User.id.in_(targets))
    )
    result = await db.execute(stmt)

    standings: Dict[str, Standing] = {}
    for target_id, role_name, priority in result.all():
        entry = standings.setdefault(target_id, [])
        if role_name is not None:
            entry.append((role_name, priority))

    return {t: t in standings and outranks(actor, standings[t]) for t in targets}


async def can_manage_user(db: AsyncSession, actor_id: str, target_id: str) -> bool:
    """Whether ``actor_id`` may act on ``target_id``; never true for oneself."""
    if actor_id == target_id:
        return False
    results = await can_manage_users(db, actor_id, [target_id])
    return results.get(target_id, False)


async def require_can_manage_user(db: AsyncSession, actor_id: str, target_id: str) -> None:
    """
    Raises:
        AuthorizationError: target is oneself, an Admin, or of equal or higher rank
    """
    if not await can_manage_user(db, actor_id, target_id):
        raise AuthorizationError("Forbidden: you cannot manage a member of equal or higher rank")


async def get_manageable_roles(db: AsyncSession, actor_id: str) -> List[Role]:
    """
    Roles the actor may grant or revoke: priority strictly below the actor's
    highest priority, "Admin" excluded unless the actor is Admin.
    """
    roles = await get_user_roles(db, actor_id)
    if not roles:
        return []

    actor_max = roles[0].priority
    stmt = select(Role).where(Role.priority < actor_max)
    if not any(is_super_role(r.name) for r in roles):
        stmt = stmt.where(Role.name.not_in(SUPER_ROLES))
    stmt = stmt.order_by(Role.priority.desc(), Role.name)

    result = await db.execute(stmt)
    return list(result.scalars().all())
