from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, text

from adem.core.errors import AuthorizationError, NotFoundError
from adem.features.members import service
from adem.features.members.schemas import UserListFilters
from adem.features.permissions import rbac
from adem.features.permissions.models import Permission, role_permissions, user_roles
from adem.features.users.models import User, UserStatus


# ===================================================================
#  Moderation
# ===================================================================

class TestBan:
    async def test_moderator_bans_bureau(self, db, make_user, context_for, audit_entries):
        moderator = await make_user(role_names=["Moderateur"])
        bureau = await make_user(name="Bea", role_names=["Bureau"])
        until = datetime.now(timezone.utc) + timedelta(days=7)

        result = await service.ban_user(context_for(moderator), bureau.id, "  spam  ", until)

        assert result.success, result.error
        banned = await db.get(User, bureau.id, populate_existing=True)
        assert banned.status == UserStatus.BANNED.value
        assert banned.banned is True
        assert banned.ban_reason == "spam"
        assert not await rbac.has_permission(db, bureau.id, "members:read")

        [entry] = await audit_entries("ban")
        assert entry.user_id == moderator.id
        assert entry.resource_id == bureau.id
        assert entry.details["type"] == "temporary"
        assert entry.details["target_user_name"] == "Bea"

    async def test_bureau_lacks_ban_permission(self, make_user, context_for):
        bureau = await make_user(role_names=["Bureau"])
        member = await make_user(role_names=["Membre"])

        result = await service.ban_user(context_for(bureau), member.id, "spam")

        assert result.code == "forbidden"

    async def test_moderator_cannot_ban_a_peer(self, db, make_user, context_for, audit_entries):
        moderator = await make_user(role_names=["Moderateur"])
        peer = await make_user(role_names=["Moderateur"])

        result = await service.ban_user(context_for(moderator), peer.id, "spam")

        assert result.code == "forbidden"
        unchanged = await db.get(User, peer.id, populate_existing=True)
        assert unchanged.status == UserStatus.ACTIVE.value
        assert await audit_entries() == []

    async def test_outranked_moderator_cannot_ban(self, db, roles, make_user, context_for):
        roles["Moderateur"].priority = 50
        roles["Bureau"].priority = 80
        await db.commit()
        moderator = await make_user(role_names=["Moderateur"])
        bureau = await make_user(role_names=["Bureau"])

        result = await service.ban_user(context_for(moderator), bureau.id, "spam")

        assert result.success is False
        assert result.error
        unchanged = await db.get(User, bureau.id, populate_existing=True)
        assert unchanged.status == UserStatus.ACTIVE.value

    async def test_nobody_bans_an_admin(self, make_user, context_for):
        admin = await make_user(role_names=["Admin"])
        other_admin = await make_user(role_names=["Admin"])

        result = await service.ban_user(context_for(admin), other_admin.id, "spam")

        assert result.code == "forbidden"

    async def test_pending_member_cannot_be_banned(self, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        pending = await make_user(status=UserStatus.PENDING)

        result = await service.ban_user(context_for(moderator), pending.id, "spam")

        assert result.code == "conflict"

    async def test_blank_reason(self, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        member = await make_user(role_names=["Membre"])

        result = await service.ban_user(context_for(moderator), member.id, "   ")

        assert result.code == "validation"

    async def test_unknown_target(self, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        result = await service.ban_user(context_for(moderator), "missing", "spam")
        assert result.code == "not_found"

    async def test_unban(self, db, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        banned = await make_user(role_names=["Membre"], status=UserStatus.BANNED)

        result = await service.unban_user(context_for(moderator), banned.id)

        assert result.success, result.error
        user = await db.get(User, banned.id, populate_existing=True)
        assert user.status == UserStatus.ACTIVE.value
        assert user.banned is False
        assert await rbac.has_permission(db, banned.id, "members:read")

    async def test_unban_requires_a_banned_member(self, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        member = await make_user(role_names=["Membre"])

        result = await service.unban_user(context_for(moderator), member.id)

        assert result.code == "conflict"


class TestLifecycle:
    async def test_accept_pending_member(self, db, make_user, context_for, role_names_of, audit_entries):
        admin = await make_user(role_names=["Admin"])
        pending = await make_user(status=UserStatus.PENDING)

        result = await service.accept_user(context_for(admin), pending.id)

        assert result.success, result.error
        user = await db.get(User, pending.id, populate_existing=True)
        assert user.status == UserStatus.ACTIVE.value
        assert await role_names_of(pending.id) == ["Membre"]
        [entry] = await audit_entries("accept")
        assert entry.details["new_status"] == "active"

    async def test_accept_keeps_existing_membre(self, make_user, context_for, role_names_of):
        admin = await make_user(role_names=["Admin"])
        pending = await make_user(role_names=["Membre"], status=UserStatus.PENDING)

        result = await service.accept_user(context_for(admin), pending.id)

        assert result.success, result.error
        assert await role_names_of(pending.id) == ["Membre"]

    async def test_accept_active_member_conflicts(self, make_user, context_for):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Membre"])

        result = await service.accept_user(context_for(admin), member.id)

        assert result.code == "conflict"

    async def test_reject_pending_member(self, db, make_user, context_for, identity_provider, audit_entries):
        admin = await make_user(role_names=["Admin"])
        pending = await make_user(status=UserStatus.PENDING, email="late@adem.test")

        result = await service.reject_user(context_for(admin), pending.id, identity_provider)

        assert result.success, result.error
        assert await db.get(User, pending.id, populate_existing=True) is None
        assert identity_provider.deleted == [pending.id]
        [entry] = await audit_entries("reject")
        assert entry.resource_id == pending.id
        assert entry.details == {"target_user_email": "late@adem.test"}

    async def test_reject_active_member_conflicts(self, make_user, context_for):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Membre"])

        result = await service.reject_user(context_for(admin), member.id)

        assert result.code == "conflict"

    async def test_moderator_cannot_accept(self, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        pending = await make_user(status=UserStatus.PENDING)

        result = await service.accept_user(context_for(moderator), pending.id)

        assert result.code == "forbidden"

    async def test_delete_member(self, db, make_user, context_for, identity_provider):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Membre", "Correcteur"])

        result = await service.delete_user(context_for(admin), member.id, identity_provider)

        assert result.success, result.error
        assert await db.get(User, member.id, populate_existing=True) is None
        remaining = await db.execute(select(user_roles).where(user_roles.c.user_id == member.id))
        assert remaining.first() is None
        assert identity_provider.deleted == [member.id]

    async def test_self_delete_conflicts(self, make_user, context_for):
        admin = await make_user(role_names=["Admin"])

        result = await service.delete_user(context_for(admin), admin.id)

        assert result.code == "conflict"

    async def test_delete_unknown_member(self, make_user, context_for):
        admin = await make_user(role_names=["Admin"])
        result = await service.delete_user(context_for(admin), "missing")
        assert result.code == "not_found"

    async def test_reset_password(self, make_user, context_for, identity_provider, audit_entries):
        moderator = await make_user(role_names=["Moderateur"])
        member = await make_user(role_names=["Membre"], email="forgetful@adem.test")

        result = await service.reset_user_password(context_for(moderator), member.id, identity_provider)

        assert result.success, result.error
        assert identity_provider.password_resets == ["forgetful@adem.test"]
        [entry] = await audit_entries("update")
        assert entry.details["action"] == "reset_password"

    async def test_reset_password_respects_hierarchy(self, make_user, context_for, identity_provider):
        moderator = await make_user(role_names=["Moderateur"])
        admin = await make_user(role_names=["Admin"])

        result = await service.reset_user_password(context_for(moderator), admin.id, identity_provider)

        assert result.code == "forbidden"
        assert identity_provider.password_resets == []


# ===================================================================
#  Role assignment
# ===================================================================

class TestSetUserRoles:
    async def test_overwrites_roles(self, db, roles, make_user, context_for, role_names_of, audit_entries):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Membre"])

        result = await service.set_user_roles(
            context_for(admin), member.id, [roles["Bureau"].id, roles["Correcteur"].id]
        )

        assert result.success, result.error
        assert result.data == ["Bureau", "Correcteur"]
        assert await role_names_of(member.id) == ["Bureau", "Correcteur"]
        assigned_by = await db.execute(
            select(user_roles.c.assigned_by).where(user_roles.c.user_id == member.id).distinct()
        )
        assert assigned_by.scalars().all() == [admin.id]

        [entry] = await audit_entries("assign")
        assert entry.details["old_roles"] == ["Membre"]
        assert entry.details["new_roles"] == ["Bureau", "Correcteur"]

    async def test_same_request_twice(self, roles, make_user, context_for, role_names_of, audit_entries):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Membre"])
        ctx = context_for(admin)

        first = await service.set_user_roles(ctx, member.id, [roles["CA"].id])
        second = await service.set_user_roles(ctx, member.id, [roles["CA"].id])

        assert first.data == second.data == ["CA"]
        assert await role_names_of(member.id) == ["CA"]
        assert len(await audit_entries("assign")) == 2

    async def test_empty_request_leaves_membre(self, roles, make_user, context_for, role_names_of):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Bureau"])

        result = await service.set_user_roles(context_for(admin), member.id, [])

        assert result.success, result.error
        assert result.data == ["Membre"]
        assert await role_names_of(member.id) == ["Membre"]

    async def test_admin_role_is_never_granted(self, roles, make_user, context_for, role_names_of):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Membre"])

        result = await service.set_user_roles(context_for(admin), member.id, [roles["Admin"].id])

        assert result.code == "forbidden"
        assert await role_names_of(member.id) == ["Membre"]

    async def test_unknown_role(self, make_user, context_for):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["Membre"])

        result = await service.set_user_roles(context_for(admin), member.id, ["missing"])

        assert result.code == "validation"

    async def test_roles_above_the_actor_are_refused(self, db, roles, make_user, context_for, grant_permissions):
        # Give Bureau the change_role permission so only the hierarchy stands in the way
        await grant_permissions("Bureau", "members:update", "members:change_role")
        bureau = await make_user(role_names=["Bureau"])
        member = await make_user(role_names=["Membre"])

        refused = await service.set_user_roles(context_for(bureau), member.id, [roles["Moderateur"].id])
        peer = await service.set_user_roles(context_for(bureau), member.id, [roles["CA"].id])
        allowed = await service.set_user_roles(context_for(bureau), member.id, [roles["Correcteur"].id])

        assert refused.code == "forbidden"
        assert peer.code == "forbidden"
        assert allowed.success, allowed.error

    async def test_moderator_lacks_change_role(self, roles, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        member = await make_user(role_names=["Membre"])

        result = await service.set_user_roles(context_for(moderator), member.id, [roles["Correcteur"].id])

        assert result.code == "forbidden"

    async def test_storage_failure_keeps_the_old_roles(self, db, roles, make_user, context_for, role_names_of, audit_entries):
        admin = await make_user(role_names=["Admin"])
        member = await make_user(role_names=["CA"])
        member_id, corrector_id = member.id, roles["Correcteur"].id
        await db.execute(text(
            "CREATE TRIGGER block_role_grants BEFORE INSERT ON user_roles "
            "BEGIN SELECT RAISE(ABORT, 'role grants are disabled'); END"
        ))
        await db.commit()

        result = await service.set_user_roles(context_for(admin), member_id, [corrector_id])

        assert not result.success
        assert result.code == "error"
        assert result.error == "Failed to update the member's roles"
        assert await role_names_of(member_id) == ["CA"]
        assert await audit_entries("assign") == []


@pytest.fixture
def grant_permissions(db, roles):
    """Grant extra catalog permissions to a seeded role."""
    async def _grant(role_name: str, *names: str):
        result = await db.execute(select(Permission.id).where(Permission.name.in_(names)))
        for permission_id in result.scalars().all():
            await db.execute(
                role_permissions.insert().values(role_id=roles[role_name].id, permission_id=permission_id)
            )
        await db.commit()

    return _grant


# ===================================================================
#  Audit sink
# ===================================================================

class TestAuditFailure:
    async def test_mutation_survives_a_failed_audit_write(self, db, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        member = await make_user(role_names=["Membre"])
        await db.execute(text("DROP TABLE audit_logs"))
        await db.commit()

        result = await service.ban_user(context_for(moderator), member.id, "spam")

        assert result.success, result.error
        banned = await db.get(User, member.id, populate_existing=True)
        assert banned.status == UserStatus.BANNED.value


# ===================================================================
#  Directory
# ===================================================================

class TestDirectory:
    async def test_search_status_and_role_filters(self, roles, make_user, context_for):
        reader = await make_user(name="Reader", role_names=["Membre"])
        await make_user(name="Alice Martin", role_names=["Bureau"], email="alice@adem.test")
        await make_user(name="Bob", role_names=["Correcteur"], email="bob.martin@adem.test")
        await make_user(name="Carol", status=UserStatus.PENDING, email="carol@adem.test")
        ctx = context_for(reader)

        by_search = await service.list_users(ctx, UserListFilters(search="martin", sort_by="name", sort_order="asc"))
        by_status = await service.list_users(ctx, UserListFilters(status=UserStatus.PENDING))
        by_role = await service.list_users(ctx, UserListFilters(role_id=roles["Bureau"].id))

        assert [u.name for u in by_search.users] == ["Alice Martin", "Bob"]
        assert by_search.total == 2
        assert [u.name for u in by_status.users] == ["Carol"]
        assert [u.name for u in by_role.users] == ["Alice Martin"]
        assert [r.name for r in by_role.users[0].roles] == ["Bureau"]

    async def test_pagination(self, make_user, context_for):
        reader = await make_user(name="A reader", role_names=["Membre"])
        for i in range(4):
            await make_user(name=f"Member {i}")

        page = await service.list_users(
            context_for(reader), UserListFilters(page=2, limit=2, sort_by="name", sort_order="asc")
        )

        assert page.total == 5
        assert page.total_pages == 3
        assert [u.name for u in page.users] == ["Member 1", "Member 2"]

    async def test_role_filter_counts_before_paginating(self, roles, make_user, context_for):
        reader = await make_user(name="Reader", role_names=["Membre"])
        for i in range(3):
            await make_user(name=f"Corrector {i}", role_names=["Correcteur"])

        page = await service.list_users(
            context_for(reader), UserListFilters(role_id=roles["Correcteur"].id, limit=2)
        )

        assert page.total == 3
        assert len(page.users) == 2

    async def test_reads_require_members_read(self, make_user, context_for):
        nobody = await make_user()
        with pytest.raises(AuthorizationError):
            await service.list_users(context_for(nobody))

    async def test_get_user(self, make_user, context_for):
        reader = await make_user(role_names=["Membre"])
        target = await make_user(name="Target", role_names=["CA", "Membre"])

        user = await service.get_user(context_for(reader), target.id)

        assert user.name == "Target"
        assert [r.name for r in user.roles] == ["CA", "Membre"]
        with pytest.raises(NotFoundError):
            await service.get_user(context_for(reader), "missing")

    async def test_assignable_roles(self, make_user, context_for):
        admin = await make_user(role_names=["Admin"])

        assignable = await service.get_assignable_roles(context_for(admin))

        assert [r.name for r in assignable][0] == "Moderateur"
        assert "Admin" not in [r.name for r in assignable]

    async def test_can_manage_members(self, make_user, context_for):
        moderator = await make_user(role_names=["Moderateur"])
        member = await make_user(role_names=["Membre"])
        admin = await make_user(role_names=["Admin"])

        results = await service.can_manage_members(context_for(moderator), [member.id, admin.id, moderator.id])

        assert results == {member.id: True, admin.id: False}
