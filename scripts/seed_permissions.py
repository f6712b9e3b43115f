"""
Seed script to populate the permission catalog and the default roles.

Run this script after database initialization to create:
- Every catalog permission
- The default roles and their permission sets

Existing rows are left untouched, so the script can be re-run safely.
``--promote EMAIL`` additionally activates that member and grants them Admin.

Usage:
    python -m scripts.seed_permissions
    python -m scripts.seed_permissions --promote admin@example.org
"""
import argparse
import asyncio
from typing import Dict, Optional

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from adem.core.database.engine import AsyncSessionLocal, init_db
from adem.features.permissions.catalog import ADMIN_ROLE, CATALOG, DEFAULT_ROLES, MEMBER_ROLE
from adem.features.permissions.models import Permission, Role, role_permissions, user_roles
from adem.features.users.models import User, UserStatus
from adem.utils import configure_logging, get_logger


log = get_logger(__name__)


async def seed_permissions(db: AsyncSession) -> Dict[str, Permission]:
    """
    Create the catalog permissions.

    Returns:
        Dictionary mapping permission names to Permission objects
    """
    log.info("Creating catalog permissions...")
    result = await db.execute(select(Permission))
    permissions_map = {p.name: p for p in result.scalars().all()}

    created = 0
    for key, description in CATALOG.items():
        name = str(key)
        if name in permissions_map:
            log.debug(f"Permission '{name}' already exists, skipping")
            continue

        permission = Permission(
            name=name,
            resource=key.resource.value,
            action=key.action.value,
            description=description,
        )
        db.add(permission)
        permissions_map[name] = permission
        created += 1

    await db.commit()
    log.info(f"Created {created} permissions ({len(permissions_map)} in catalog)")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: Dict[str, Permission]) -> Dict[str, Role]:
    """
    Create the default roles and link their permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission name -> Permission object
    """
    log.info("Creating default roles...")
    roles_map: Dict[str, Role] = {}

    for role_name, role_config in DEFAULT_ROLES.items():
        result = await db.execute(select(Role).where(Role.name == role_name))
        existing = result.scalars().first()
        if existing:
            log.debug(f"Role '{role_name}' already exists, skipping")
            roles_map[role_name] = existing
            continue

        role = Role(
            name=role_name,
            description=role_config["description"],
            color=role_config["color"],
            priority=role_config["priority"],
        )
        db.add(role)
        await db.flush()

        permission_ids = []
        for key in role_config["permissions"]:
            permission = permissions_map.get(str(key))
            if permission is None:
                log.warning(f"Permission '{key}' not found for role '{role_name}'")
                continue
            permission_ids.append(permission.id)

        if permission_ids:
            await db.execute(
                insert(role_permissions),
                [{"role_id": role.id, "permission_id": pid} for pid in permission_ids],
            )
        roles_map[role_name] = role
        log.info(f"Created role '{role_name}' (priority {role.priority}) with {len(permission_ids)} permissions")

    await db.commit()
    return roles_map


async def promote_admin(db: AsyncSession, email: str) -> Optional[User]:
    """Activate a member and grant them the Admin and Membre roles."""
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    user = result.scalars().first()
    if user is None:
        log.error(f"No member with email {email}")
        return None

    result = await db.execute(select(Role).where(Role.name.in_([ADMIN_ROLE, MEMBER_ROLE])))
    for role in result.scalars().all():
        held = await db.execute(
            select(user_roles.c.role_id).where(
                user_roles.c.user_id == user.id,
                user_roles.c.role_id == role.id,
            )
        )
        if held.first() is None:
            await db.execute(insert(user_roles).values(user_id=user.id, role_id=role.id, assigned_by=None))

    user.status = UserStatus.ACTIVE.value
    await db.commit()
    log.info(f"{email} is now {ADMIN_ROLE}")
    return user


async def main(promote: Optional[str] = None):
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)
            if promote:
                await promote_admin(db, promote)
        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

    log.info("Permission seeding completed successfully!")


if __name__ == "__main__":
    configure_logging()
    parser = argparse.ArgumentParser(description="Seed the permission catalog and default roles")
    parser.add_argument("--promote", metavar="EMAIL", help="grant Admin to an existing member")
    args = parser.parse_args()
    asyncio.run(main(args.promote))
