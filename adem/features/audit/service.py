"""
Audit sink and audit log viewer.

``record_audit`` is called after a mutation has committed. It is best effort:
a failed write is logged and swallowed, the mutation it describes stands.
"""
import enum
import math
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import aliased

from adem.core.context import RequestContext
from adem.features.audit.models import AuditLog
from adem.features.audit.schemas import AuditLogEntry, AuditLogFilters, AuditLogPage
from adem.features.permissions import rbac
from adem.features.permissions.catalog import LOGS_READ
from adem.features.permissions.models import Role
from adem.features.users.models import User
from adem.utils import get_logger


log = get_logger(__name__)


class AuditAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BAN = "ban"
    UNBAN = "unban"
    ASSIGN = "assign"
    REMOVE = "remove"
    ACCEPT = "accept"
    REJECT = "reject"


class AuditResource(str, enum.Enum):
    ROLE = "role"
    PERMISSION = "permission"
    USER = "user"
    MEMBER = "member"
    WHITELIST = "whitelist"


_USER_RESOURCES = (AuditResource.USER.value, AuditResource.MEMBER.value)


# ============================================================================
# Audit Sink
# ============================================================================

async def record_audit(
    ctx: RequestContext,
    action: AuditAction,
    resource: AuditResource,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[AuditLog]:
    """
    Create an audit log entry for the context's user.

    Args:
        ctx: Request context (actor, ip address, user agent)
        action: Action performed
        resource: Type of resource affected
        resource_id: ID of the resource affected
        metadata: Additional details

    Returns:
        Created AuditLog object, or None when the write failed
    """
    db = ctx.db
    audit_log = AuditLog(
        user_id=ctx.user_id,
        action=AuditAction(action).value,
        resource=AuditResource(resource).value,
        resource_id=resource_id,
        details=metadata,
        ip_address=ctx.ip_address or "unknown",
        user_agent=ctx.user_agent or "unknown",
    )
    try:
        db.add(audit_log)
        await db.commit()
    except Exception:
        log.exception(f"Failed to write audit log: user={ctx.user_id} action={audit_log.action}")
        await db.rollback()
        return None

    log.info(
        f"Audit: user={ctx.user_id} action={audit_log.action} "
        f"resource={audit_log.resource}:{resource_id}"
    )
    return audit_log


# ============================================================================
# Audit Log Viewer
# ============================================================================

def _filter_clause(filters: AuditLogFilters):
    conditions = []
    if filters.action:
        conditions.append(AuditLog.action == filters.action)
    if filters.resource:
        conditions.append(AuditLog.resource == filters.resource)
    if filters.user_id:
        conditions.append(AuditLog.user_id == filters.user_id)
    if filters.date_from:
        conditions.append(AuditLog.created_at >= filters.date_from)
    if filters.date_to:
        conditions.append(AuditLog.created_at <= filters.date_to)
    return and_(*conditions) if conditions else None


async def list_audit_logs(ctx: RequestContext, filters: Optional[AuditLogFilters] = None) -> AuditLogPage:
    """
    Filtered, paginated audit log, newest first.

    Each entry carries the actor's name and email and, for user and role
    entries, the current name of the affected user or role.

    Raises:
        AuthorizationError: caller lacks ``logs:read``
    """
    filters = filters or AuditLogFilters()
    await rbac.require_permission(ctx.db, ctx.user_id, LOGS_READ)

    actor = aliased(User, name="actor")
    target_user = aliased(User, name="target_user")
    resource_name = case(
        (AuditLog.resource.in_(_USER_RESOURCES), target_user.name),
        (AuditLog.resource == AuditResource.ROLE.value, Role.name),
        else_=None,
    )

    stmt = (
        select(AuditLog, actor.name, actor.email, resource_name)
        .outerjoin(actor, actor.id == AuditLog.user_id)
        .outerjoin(
            target_user,
            and_(target_user.id == AuditLog.resource_id, AuditLog.resource.in_(_USER_RESOURCES)),
        )
        .outerjoin(
            Role,
            and_(Role.id == AuditLog.resource_id, AuditLog.resource == AuditResource.ROLE.value),
        )
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit)
    )
    count_stmt = select(func.count()).select_from(AuditLog)

    where = _filter_clause(filters)
    if where is not None:
        stmt = stmt.where(where)
        count_stmt = count_stmt.where(where)

    result = await ctx.db.execute(stmt)
    logs = [
        AuditLogEntry(
            id=entry.id,
            user_id=entry.user_id,
            user_name=user_name,
            user_email=user_email,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            resource_name=name,
            metadata=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )
        for entry, user_name, user_email, name in result.all()
    ]
    total = (await ctx.db.execute(count_stmt)).scalar_one()

    return AuditLogPage(
        logs=logs,
        total=total,
        page=filters.page,
        limit=filters.limit,
        total_pages=math.ceil(total / filters.limit),
    )


async def get_available_actions(ctx: RequestContext) -> List[str]:
    """Distinct actions present in the log, for filter pickers."""
    await rbac.require_permission(ctx.db, ctx.user_id, LOGS_READ)
    result = await ctx.db.execute(select(AuditLog.action).distinct().order_by(AuditLog.action))
    return list(result.scalars().all())


async def get_available_resources(ctx: RequestContext) -> List[str]:
    """Distinct resources present in the log, for filter pickers."""
    await rbac.require_permission(ctx.db, ctx.user_id, LOGS_READ)
    result = await ctx.db.execute(select(AuditLog.resource).distinct().order_by(AuditLog.resource))
    return list(result.scalars().all())
