"""
Request-scoped context passed explicitly to every guard and service call.

A context is built once at request entry (see
``adem.features.users.dependencies.get_request_context``) and dropped when the
request ends. Nothing in it is shared between requests.
"""
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class RequestContext:
    db: AsyncSession
    user_id: str
    email_verified: bool = False
    ip_address: str = "unknown"
    user_agent: str = "unknown"
