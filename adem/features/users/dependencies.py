"""
FastAPI dependencies for authentication and the request context.
"""
from functools import lru_cache
from typing import Annotated, Optional, Tuple
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from adem.core.context import RequestContext
from adem.core.database.engine import get_db
from adem.core.errors import AuthenticationError
from adem.features.users.auth import AppwriteIdentityProvider, IdentityProvider
from adem.features.users.models import User


security = HTTPBearer(auto_error=False)


@lru_cache
def get_identity_provider() -> IdentityProvider:
    return AppwriteIdentityProvider()


def get_client_info(request: Request) -> Tuple[str, str]:
    """
    Client address and user agent for audit records.

    Returns:
        (ip_address, user_agent), "unknown" where not available
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.headers.get("x-real-ip") or (
            request.client.host if request.client else None
        )
    user_agent = request.headers.get("user-agent")
    return ip_address or "unknown", user_agent or "unknown"


async def get_request_context(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
    provider: Annotated[IdentityProvider, Depends(get_identity_provider)],
) -> RequestContext:
    """
    Build the request-scoped context from the bearer token.

    This dependency:
    1. Extracts the token from the Authorization header
    2. Resolves it to a session with the identity provider
    3. Checks the user exists locally

    Usage:
        @router.get("/me")
        async def get_me(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")

    session = await provider.get_session(credentials.credentials)
    if session is None:
        raise AuthenticationError("Invalid or expired session")

    user = await db.get(User, session.user_id)
    if user is None:
        raise AuthenticationError("No member account for this session")

    ip_address, user_agent = get_client_info(request)
    return RequestContext(
        db=db,
        user_id=user.id,
        email_verified=session.email_verified,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
