"""
Pytest configuration and fixtures.

Every test gets a fresh in-memory SQLite database with the permission catalog
and default roles seeded.
"""
import contextlib
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import event, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from adem.core.context import RequestContext
from adem.core.database.base import generate_ulid
from adem.core.database.engine import build_engine, init_db
from adem.features.audit.models import AuditLog
from adem.features.permissions.models import Role, user_roles
from adem.features.users.auth import IdentityProvider, IdentitySession
from adem.features.users.models import User, UserStatus
from scripts.seed_permissions import seed_permissions, seed_roles


# ===================================================================
#  Database
# ===================================================================

@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def roles(db) -> Dict[str, Role]:
    """Seeded default roles by name."""
    permissions = await seed_permissions(db)
    return await seed_roles(db, permissions)


@pytest.fixture
def count_queries(engine):
    """
    Count the statements executed inside the block.

    Usage:
        with count_queries() as counter:
            ...
        assert counter["n"] <= 2
    """
    @contextlib.contextmanager
    def _count():
        counter = {"n": 0}

        def _before_cursor_execute(*_args, **_kwargs):
            counter["n"] += 1

        event.listen(engine.sync_engine, "before_cursor_execute", _before_cursor_execute)
        try:
            yield counter
        finally:
            event.remove(engine.sync_engine, "before_cursor_execute", _before_cursor_execute)

    return _count


# ===================================================================
#  Members
# ===================================================================

@pytest.fixture
def make_user(db, roles):
    """Factory fixture creating a member holding the given roles."""
    async def _make_user(
        name: str = "Member",
        role_names: Optional[List[str]] = None,
        status: UserStatus = UserStatus.ACTIVE,
        email: Optional[str] = None,
    ) -> User:
        user_id = generate_ulid()
        user = User(
            id=user_id,
            name=name,
            email=email or f"{user_id.lower()}@adem.test",
            status=status.value,
            banned=status == UserStatus.BANNED,
        )
        db.add(user)
        await db.flush()
        for role_name in role_names or []:
            await db.execute(insert(user_roles).values(user_id=user_id, role_id=roles[role_name].id))
        await db.commit()
        await db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def context_for(db):
    def _context_for(user: User) -> RequestContext:
        return RequestContext(db=db, user_id=user.id, ip_address="10.0.0.1", user_agent="pytest")

    return _context_for


@pytest.fixture
def role_names_of(db):
    """Names of the roles assigned to a user, most senior first."""
    async def _role_names_of(user_id: str) -> List[str]:
        result = await db.execute(
            select(Role.name)
            .join(user_roles, user_roles.c.role_id == Role.id)
            .where(user_roles.c.user_id == user_id)
            .order_by(Role.priority.desc(), Role.name)
        )
        return list(result.scalars().all())

    return _role_names_of


@pytest.fixture
def audit_entries(db):
    async def _audit_entries(action: Optional[str] = None) -> List[AuditLog]:
        stmt = select(AuditLog).order_by(AuditLog.created_at)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    return _audit_entries


# ===================================================================
#  Identity provider
# ===================================================================

class FakeIdentityProvider(IdentityProvider):
    """In-memory identity provider: bearer tokens map straight to user ids."""

    def __init__(self):
        self.sessions: Dict[str, IdentitySession] = {}
        self.signed_up: Dict[str, str] = {}
        self.password_resets: List[str] = []
        self.deleted: List[str] = []

    def login(self, user: User, token: Optional[str] = None) -> str:
        token = token or f"token-{user.id}"
        self.sessions[token] = IdentitySession(user_id=user.id, email_verified=True)
        return token

    async def get_session(self, token: str) -> Optional[IdentitySession]:
        return self.sessions.get(token)

    async def sign_up(self, name: str, email: str, password: str) -> str:
        user_id = generate_ulid()
        self.signed_up[email] = user_id
        return user_id

    async def request_password_reset(self, email: str) -> None:
        self.password_resets.append(email)

    async def delete_identity(self, user_id: str) -> None:
        self.deleted.append(user_id)


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()
