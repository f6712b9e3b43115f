"""
Whitelist API routes.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, status

from adem.core.context import RequestContext
from adem.core.results import render
from adem.features.invitations import service
from adem.features.invitations.schemas import WhitelistAdd, WhitelistBatchAdd, WhitelistEntryResponse
from adem.features.users.dependencies import get_request_context


Context = Annotated[RequestContext, Depends(get_request_context)]

router = APIRouter()


@router.get("", response_model=List[WhitelistEntryResponse])
async def list_whitelist(ctx: Context):
    return await service.list_whitelist(ctx)


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_email(body: WhitelistAdd, ctx: Context):
    return render(await service.add_email_to_whitelist(ctx, body.email), status.HTTP_201_CREATED)


@router.post("/batch", status_code=status.HTTP_201_CREATED)
async def add_emails(body: WhitelistBatchAdd, ctx: Context):
    """Whitelist several emails; already listed ones are skipped."""
    return render(await service.add_emails_to_whitelist(ctx, body.emails), status.HTTP_201_CREATED)


@router.delete("")
async def clear_whitelist(ctx: Context):
    return render(await service.clear_whitelist(ctx))


@router.delete("/{entry_id}")
async def remove_email(entry_id: str, ctx: Context):
    return render(await service.remove_email_from_whitelist(ctx, entry_id))
