import pytest
import pytest_asyncio
from sqlalchemy import delete, select

from adem.core.errors import AuthorizationError, NotFoundError
from adem.features.permissions import rbac, service
from adem.features.permissions.models import Permission, Role, user_roles
from adem.features.permissions.schemas import RoleCreate, RoleUpdate


@pytest.fixture
def permission_ids(db):
    """Ids of catalog permissions by name."""
    async def _permission_ids(*names: str):
        result = await db.execute(select(Permission.id, Permission.name).where(Permission.name.in_(names)))
        by_name = {name: pid for pid, name in result.all()}
        return [by_name[name] for name in names]

    return _permission_ids


@pytest_asyncio.fixture
async def admin_ctx(make_user, context_for):
    admin = await make_user(name="Alice", role_names=["Admin"])
    return context_for(admin)


class TestCreateRole:
    async def test_creates_role_with_permissions(self, db, admin_ctx, permission_ids, audit_entries):
        ids = await permission_ids("events:read", "tasks:read")

        result = await service.create_role(
            admin_ctx, RoleCreate(name="Tresorier", color="#123456", priority=40, permission_ids=ids)
        )

        assert result.success, result.error
        assert result.data.name == "Tresorier"
        assert result.data.created_at is not None
        detail = await service.get_role(admin_ctx, result.data.id)
        assert sorted(p.name for p in detail.permissions) == ["events:read", "tasks:read"]

        [entry] = await audit_entries("create")
        assert entry.resource == "role"
        assert entry.resource_id == result.data.id
        assert entry.details["permission_count"] == 2
        assert entry.ip_address == "10.0.0.1"

    async def test_duplicate_name(self, admin_ctx):
        result = await service.create_role(admin_ctx, RoleCreate(name="Bureau"))
        assert not result.success
        assert result.code == "validation"

    async def test_reserved_name(self, admin_ctx):
        result = await service.create_role(admin_ctx, RoleCreate(name="Admin"))
        assert not result.success
        assert result.code == "validation"

    async def test_unknown_permission(self, db, admin_ctx):
        result = await service.create_role(admin_ctx, RoleCreate(name="Ghost", permission_ids=["nope"]))

        assert result.code == "validation"
        assert (await db.execute(select(Role).where(Role.name == "Ghost"))).first() is None

    async def test_requires_roles_create(self, make_user, context_for, audit_entries):
        moderator = await make_user(role_names=["Moderateur"])

        result = await service.create_role(context_for(moderator), RoleCreate(name="Nope"))

        assert not result.success
        assert result.code == "forbidden"
        assert await audit_entries() == []


class TestUpdateRole:
    async def test_records_changes(self, admin_ctx, roles, audit_entries):
        result = await service.update_role(
            admin_ctx, roles["Correcteur"].id, RoleUpdate(name="Relecteur", priority=55)
        )

        assert result.success, result.error
        assert result.data.name == "Relecteur"
        [entry] = await audit_entries("update")
        assert entry.details["changes"] == {
            "name": {"from": "Correcteur", "to": "Relecteur"},
            "priority": {"from": 50, "to": 55},
        }

    async def test_no_change_writes_no_audit(self, admin_ctx, roles, audit_entries):
        result = await service.update_role(admin_ctx, roles["CA"].id, RoleUpdate(priority=70))

        assert result.success
        assert await audit_entries() == []

    async def test_admin_is_immutable(self, admin_ctx, roles):
        result = await service.update_role(admin_ctx, roles["Admin"].id, RoleUpdate(color="#000000"))
        assert result.code == "forbidden"

    async def test_cannot_rename_to_admin(self, admin_ctx, roles):
        result = await service.update_role(admin_ctx, roles["CA"].id, RoleUpdate(name="Admin"))
        assert result.code == "forbidden"

    async def test_membre_keeps_its_name(self, admin_ctx, roles):
        result = await service.update_role(admin_ctx, roles["Membre"].id, RoleUpdate(name="Adherent"))
        assert result.code == "conflict"

    async def test_membre_color_may_change(self, admin_ctx, roles):
        result = await service.update_role(admin_ctx, roles["Membre"].id, RoleUpdate(color="#000000"))
        assert result.success
        assert result.data.color == "#000000"

    async def test_duplicate_name(self, admin_ctx, roles):
        result = await service.update_role(admin_ctx, roles["CA"].id, RoleUpdate(name="Bureau"))
        assert result.code == "validation"

    async def test_unknown_role(self, admin_ctx):
        result = await service.update_role(admin_ctx, "missing", RoleUpdate(priority=1))
        assert result.code == "not_found"


class TestDeleteRole:
    @pytest.mark.parametrize("name", ["Admin", "Membre"])
    async def test_protected_roles(self, admin_ctx, roles, name):
        result = await service.delete_role(admin_ctx, roles[name].id)
        assert result.code == "conflict"

    async def test_holders_fall_back_to_membre(self, db, admin_ctx, roles, make_user, role_names_of, audit_entries):
        only_ca = await make_user(role_names=["CA"])
        ca_and_corrector = await make_user(role_names=["CA", "Correcteur"])

        result = await service.delete_role(admin_ctx, roles["CA"].id)

        assert result.success, result.error
        assert result.data.role_name == "CA"
        assert result.data.affected_users == 2
        assert await role_names_of(only_ca.id) == ["Membre"]
        assert await role_names_of(ca_and_corrector.id) == ["Correcteur"]

        assigned_by = await db.execute(
            select(user_roles.c.assigned_by).where(user_roles.c.user_id == only_ca.id)
        )
        assert assigned_by.scalar_one() is None
        assert await db.get(Role, roles["CA"].id, populate_existing=True) is None

        [entry] = await audit_entries("delete")
        assert entry.details == {"role_name": "CA", "affected_users": 2}

    async def test_rolls_back_when_membre_is_missing(self, db, admin_ctx, roles, make_user, role_names_of, audit_entries):
        only_ca = await make_user(role_names=["CA"])
        member_id, ca_id = only_ca.id, roles["CA"].id
        await db.execute(delete(Role).where(Role.name == "Membre"))
        await db.commit()

        result = await service.delete_role(admin_ctx, ca_id)

        assert result.code == "conflict"
        assert await role_names_of(member_id) == ["CA"]
        assert await db.get(Role, ca_id, populate_existing=True) is not None
        assert await audit_entries("delete") == []


class TestUpdateRolePermissions:
    async def test_replaces_and_audits_the_diff(self, admin_ctx, roles, permission_ids, audit_entries):
        ids = await permission_ids("events:read", "resources:read", "logs:read")

        result = await service.update_role_permissions(admin_ctx, roles["Membre"].id, ids)

        assert result.success, result.error
        assert result.data == ["events:read", "logs:read", "resources:read"]
        [entry] = await audit_entries("update")
        assert entry.resource == "permission"
        assert entry.details["added"] == ["logs:read"]
        assert entry.details["removed"] == [
            "feedback:create", "members:read", "tasks:create", "tasks:delete", "tasks:read", "tasks:update",
        ]

    async def test_takes_effect_on_next_check(self, admin_ctx, roles, permission_ids, make_user):
        member = await make_user(role_names=["Membre"])
        assert not await rbac.has_permission(admin_ctx.db, member.id, "logs:read")

        await service.update_role_permissions(
            admin_ctx, roles["Membre"].id, await permission_ids("logs:read")
        )

        assert await rbac.has_permission(admin_ctx.db, member.id, "logs:read")
        assert not await rbac.has_permission(admin_ctx.db, member.id, "events:read")

    async def test_admin_permissions_are_fixed(self, admin_ctx, roles):
        result = await service.update_role_permissions(admin_ctx, roles["Admin"].id, [])
        assert result.code == "forbidden"

    async def test_unknown_permission(self, admin_ctx, roles):
        result = await service.update_role_permissions(admin_ctx, roles["Bureau"].id, ["nope"])
        assert result.code == "validation"


class TestRemoveUserFromRole:
    async def test_last_role_falls_back_to_membre(self, db, admin_ctx, roles, make_user, role_names_of):
        corrector = await make_user(role_names=["Correcteur"])

        result = await service.remove_user_from_role(admin_ctx, corrector.id, roles["Correcteur"].id)

        assert result.success, result.error
        assert await role_names_of(corrector.id) == ["Membre"]
        assigned_by = await db.execute(
            select(user_roles.c.assigned_by).where(user_roles.c.user_id == corrector.id)
        )
        assert assigned_by.scalar_one() == admin_ctx.user_id

    async def test_other_roles_are_kept(self, admin_ctx, roles, make_user, role_names_of):
        user = await make_user(role_names=["Bureau", "Correcteur"])

        await service.remove_user_from_role(admin_ctx, user.id, roles["Bureau"].id)

        assert await role_names_of(user.id) == ["Correcteur"]

    async def test_missing_assignment(self, admin_ctx, roles, make_user):
        member = await make_user(role_names=["Membre"])
        result = await service.remove_user_from_role(admin_ctx, member.id, roles["Bureau"].id)
        assert result.code == "not_found"

    async def test_hierarchy_applies(self, admin_ctx, roles, make_user):
        other_admin = await make_user(role_names=["Admin", "Bureau"])
        result = await service.remove_user_from_role(admin_ctx, other_admin.id, roles["Bureau"].id)
        assert result.code == "forbidden"


class TestRoleReads:
    async def test_list_roles_with_counts(self, admin_ctx, make_user):
        await make_user(role_names=["Bureau"])
        await make_user(role_names=["Bureau", "Membre"])

        listed = {role.name: role for role in await service.list_roles(admin_ctx)}

        assert list(listed)[0] == "Admin"
        assert listed["Bureau"].member_count == 2
        assert listed["Admin"].permission_count == 29
        assert listed["Membre"].member_count == 1

    async def test_members_and_count(self, admin_ctx, roles, make_user):
        await make_user(name="Zoe", role_names=["CA"])
        await make_user(name="Bob", role_names=["CA"])

        members = await service.get_role_members(admin_ctx, roles["CA"].id)

        assert [m.name for m in members] == ["Bob", "Zoe"]
        assert await service.count_role_members(admin_ctx, roles["CA"].id) == 2

    async def test_unknown_role_raises(self, admin_ctx):
        with pytest.raises(NotFoundError):
            await service.get_role(admin_ctx, "missing")

    async def test_reads_require_roles_read(self, make_user, context_for):
        member = await make_user(role_names=["Membre"])
        with pytest.raises(AuthorizationError):
            await service.list_permissions(context_for(member))

    async def test_list_permissions(self, admin_ctx):
        permissions = await service.list_permissions(admin_ctx)
        assert len(permissions) == 29
        assert permissions[0].resource == "events"
