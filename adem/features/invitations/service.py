"""
Whitelist management and whitelist-gated sign-up.

A whitelisted email signs up straight into ``active`` with the "Membre" role;
any other sign-up waits in ``pending`` until a moderator accepts it.
"""
import dataclasses
from typing import List, Sequence

from sqlalchemy import delete, func, insert, select

from adem.core.context import RequestContext
from adem.core.database.engine import UnitOfWork
from adem.core.errors import NotFoundError, ValidationError
from adem.core.results import ActionResult, service_action
from adem.features.audit.service import AuditAction, AuditResource, record_audit
from adem.features.invitations.models import WhitelistEntry
from adem.features.invitations.schemas import (
    WhitelistBatchResult,
    WhitelistEntryResponse,
    normalize_email,
)
from adem.features.permissions import rbac
from adem.features.permissions.catalog import (
    MEMBERS_CREATE,
    MEMBERS_DELETE,
    MEMBERS_INVITE,
    MEMBERS_READ,
)
from adem.features.permissions.membership import ensure_user_has_role
from adem.features.users.auth import IdentityProvider
from adem.features.users.models import User, UserStatus
from adem.features.users.schemas import SignUpRequest, UserResponse
from adem.utils import get_logger


log = get_logger(__name__)

READ_PERMISSIONS = [MEMBERS_INVITE, MEMBERS_READ]
ADD_PERMISSIONS = [MEMBERS_INVITE, MEMBERS_READ, MEMBERS_CREATE]
REMOVE_PERMISSIONS = [MEMBERS_INVITE, MEMBERS_READ, MEMBERS_DELETE]


async def is_whitelisted(ctx: RequestContext, email: str) -> bool:
    result = await ctx.db.execute(
        select(WhitelistEntry.id).where(WhitelistEntry.email == normalize_email(email))
    )
    return result.first() is not None


# ============================================================================
# Whitelist
# ============================================================================

async def list_whitelist(ctx: RequestContext) -> List[WhitelistEntryResponse]:
    await rbac.require_all_permissions(ctx.db, ctx.user_id, READ_PERMISSIONS)
    result = await ctx.db.execute(select(WhitelistEntry).order_by(WhitelistEntry.created_at, WhitelistEntry.email))
    return [WhitelistEntryResponse.model_validate(e) for e in result.scalars().all()]


@service_action("Failed to add the email to the whitelist")
async def add_email_to_whitelist(ctx: RequestContext, email: str) -> ActionResult:
    await rbac.require_all_permissions(ctx.db, ctx.user_id, ADD_PERMISSIONS)

    email = normalize_email(email)
    if not email:
        raise ValidationError("Email is required")
    if await is_whitelisted(ctx, email):
        raise ValidationError("This email is already whitelisted")

    async with UnitOfWork(ctx.db) as uow:
        entry = WhitelistEntry(email=email, added_by=ctx.user_id)
        uow.session.add(entry)
        await uow.session.flush()
        await uow.session.refresh(entry)

    await record_audit(ctx, AuditAction.CREATE, AuditResource.WHITELIST, entry.id, {"email": email})
    return ActionResult.ok(WhitelistEntryResponse.model_validate(entry))


@service_action("Failed to add the emails to the whitelist")
async def add_emails_to_whitelist(ctx: RequestContext, emails: Sequence[str]) -> ActionResult:
    """
    Whitelist several emails, skipping those already present.

    Fails when every email was already whitelisted.
    """
    await rbac.require_all_permissions(ctx.db, ctx.user_id, ADD_PERMISSIONS)

    normalized = [e for e in (normalize_email(e) for e in emails) if e]
    result = await ctx.db.execute(
        select(WhitelistEntry.email).where(WhitelistEntry.email.in_(normalized))
    )
    existing = set(result.scalars().all())
    new_emails = [e for e in dict.fromkeys(normalized) if e not in existing]
    skipped = len(normalized) - len(new_emails)

    if not new_emails:
        raise ValidationError("Every email is already whitelisted")

    async with UnitOfWork(ctx.db) as uow:
        await uow.session.execute(
            insert(WhitelistEntry),
            [{"email": e, "added_by": ctx.user_id} for e in new_emails],
        )

    await record_audit(
        ctx, AuditAction.CREATE, AuditResource.WHITELIST, "batch",
        {"added_count": len(new_emails), "skipped_count": skipped},
    )
    return ActionResult.ok(WhitelistBatchResult(added_count=len(new_emails), skipped_count=skipped))


@service_action("Failed to remove the email from the whitelist")
async def remove_email_from_whitelist(ctx: RequestContext, entry_id: str) -> ActionResult:
    await rbac.require_all_permissions(ctx.db, ctx.user_id, REMOVE_PERMISSIONS)

    entry = await ctx.db.get(WhitelistEntry, entry_id)
    if entry is None:
        raise NotFoundError("Whitelist entry not found")
    email = entry.email

    async with UnitOfWork(ctx.db) as uow:
        await uow.session.delete(entry)

    await record_audit(ctx, AuditAction.DELETE, AuditResource.WHITELIST, entry_id, {"email": email})
    return ActionResult.ok()


@service_action("Failed to clear the whitelist")
async def clear_whitelist(ctx: RequestContext) -> ActionResult:
    await rbac.require_all_permissions(ctx.db, ctx.user_id, REMOVE_PERMISSIONS)

    count = (await ctx.db.execute(select(func.count()).select_from(WhitelistEntry))).scalar_one()
    async with UnitOfWork(ctx.db) as uow:
        await uow.session.execute(delete(WhitelistEntry))

    await record_audit(ctx, AuditAction.DELETE, AuditResource.WHITELIST, "all", {"count": count})
    return ActionResult.ok({"count": count})


# ============================================================================
# Sign-up
# ============================================================================

@service_action("Failed to create the account")
async def sign_up_with_whitelist(
    ctx: RequestContext,
    data: SignUpRequest,
    provider: IdentityProvider
) -> ActionResult:
    """
    Create an identity with the provider and the matching local member.

    ``ctx`` is an anonymous context; the audit entry is attributed to the new
    member.
    """
    email = normalize_email(data.email)
    existing = await ctx.db.execute(select(User.id).where(User.email == email))
    if existing.first() is not None:
        raise ValidationError("An account already exists for this email")

    whitelisted = await is_whitelisted(ctx, email)
    user_id = await provider.sign_up(data.name, email, data.password)

    try:
        async with UnitOfWork(ctx.db) as uow:
            user = User(
                id=user_id,
                email=email,
                name=data.name,
                status=UserStatus.ACTIVE.value if whitelisted else UserStatus.PENDING.value,
            )
            uow.session.add(user)
            await uow.session.flush()
            if whitelisted:
                await ensure_user_has_role(uow, user_id)
            await uow.session.refresh(user)
    except Exception:
        log.error(f"Local account creation failed for {email}, removing identity {user_id}")
        try:
            await provider.delete_identity(user_id)
        except Exception:
            log.exception(f"Identity {user_id} of failed sign-up {email} could not be removed")
        raise

    log.info(f"New member {email} signed up ({user.status})")
    member_ctx = dataclasses.replace(ctx, user_id=user_id)
    await record_audit(
        member_ctx, AuditAction.CREATE, AuditResource.USER, user_id,
        {"email": email, "status": user.status, "whitelisted": whitelisted},
    )
    return ActionResult.ok(UserResponse.model_validate(user))
