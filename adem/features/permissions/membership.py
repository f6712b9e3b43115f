"""
Membership invariant: every member keeps at least one role.
"""
from typing import Optional

from sqlalchemy import func, insert, select

from adem.core.database.engine import UnitOfWork
from adem.core.errors import ConflictError
from adem.features.permissions.catalog import MEMBER_ROLE
from adem.features.permissions.models import Role, user_roles
from adem.utils import get_logger


log = get_logger(__name__)


async def get_member_role_id(uow: UnitOfWork) -> str:
    """
    Raises:
        ConflictError: the "Membre" role does not exist
    """
    result = await uow.session.execute(select(Role.id).where(Role.name == MEMBER_ROLE))
    role_id = result.scalar_one_or_none()
    if role_id is None:
        raise ConflictError(f"Default role '{MEMBER_ROLE}' does not exist")
    return role_id


async def ensure_user_has_role(
    uow: UnitOfWork,
    user_id: str,
    assigned_by: Optional[str] = None
) -> bool:
    """
    Re-assign "Membre" to a user left without any role.

    Runs inside the caller's unit of work and never opens its own transaction.

    Args:
        uow: Active unit of work
        user_id: User to repair
        assigned_by: Recorded as the edge's provenance; None means the system

    Returns:
        True when a role was assigned

    Raises:
        RuntimeError: called outside an active unit of work
        ConflictError: the "Membre" role does not exist
    """
    if not uow.active:
        raise RuntimeError("ensure_user_has_role must run inside an active unit of work")

    result = await uow.session.execute(
        select(func.count()).select_from(user_roles).where(user_roles.c.user_id == user_id)
    )
    if result.scalar_one() > 0:
        return False

    member_role_id = await get_member_role_id(uow)
    await uow.session.execute(
        insert(user_roles).values(user_id=user_id, role_id=member_role_id, assigned_by=assigned_by)
    )
    log.info(f"User {user_id} had no role left - assigned {MEMBER_ROLE}")
    return True
