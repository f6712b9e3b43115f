"""
Uniform result envelope returned by every mutation entry point.

Callers render ``error`` inline instead of catching exceptions; ``code`` lets
the HTTP layer pick a status.
"""
import functools
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from adem.core.context import RequestContext
from adem.core.errors import PortalError
from adem.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")

UNIQUE_VIOLATION_SQLSTATE = "23505"


class ActionResult(BaseModel, Generic[T]):
    """Envelope: ``{success, data?, error?, code?}``."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "error") -> "ActionResult":
        return cls(success=False, error=error, code=code)


def is_unique_violation(error: IntegrityError) -> bool:
    """True when a unique constraint, rather than any other check, was violated."""
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        return sqlstate == UNIQUE_VIOLATION_SQLSTATE
    return "UNIQUE constraint failed" in str(orig)


def service_action(failure_message: str):
    """
    Turn a service coroutine into an envelope-returning entry point.

    Expected failures (``PortalError``) become failure envelopes carrying the
    error's message and code. A unique-constraint race is reported as
    ``validation``. Other storage failures are logged with their cause and
    reported with ``failure_message`` only. The wrapped coroutine receives a
    ``RequestContext`` as its first argument.
    """
    def decorator(func: Callable[..., Awaitable[ActionResult]]):
        @functools.wraps(func)
        async def wrapper(ctx: RequestContext, *args, **kwargs) -> ActionResult:
            try:
                return await func(ctx, *args, **kwargs)
            except PortalError as e:
                log.info(f"{func.__name__} refused for user {ctx.user_id}: {e.message}")
                await ctx.db.rollback()
                return ActionResult.fail(e.message, e.code)
            except IntegrityError as e:
                await ctx.db.rollback()
                if is_unique_violation(e):
                    log.warning(f"{func.__name__} hit a unique constraint for user {ctx.user_id}", exc_info=True)
                    return ActionResult.fail(failure_message, "validation")
                log.exception(f"{func.__name__} failed for user {ctx.user_id}")
                return ActionResult.fail(failure_message)
            except SQLAlchemyError:
                log.exception(f"{func.__name__} failed for user {ctx.user_id}")
                await ctx.db.rollback()
                return ActionResult.fail(failure_message)
        return wrapper
    return decorator


STATUS_BY_CODE = {
    "validation": 400,
    "unauthenticated": 401,
    "forbidden": 403,
    "not_found": 404,
    "conflict": 409,
    "error": 500,
}


def render(result: ActionResult, status_code: int = 200) -> JSONResponse:
    """JSON response for an envelope; failures take the status of their code."""
    if not result.success:
        status_code = STATUS_BY_CODE.get(result.code or "error", 500)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result))
