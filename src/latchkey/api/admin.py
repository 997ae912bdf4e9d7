"""Admin endpoints for inspecting and cleaning up tokens."""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from latchkey.api.deps import AdminClaims, AuthServiceDep, StoreDep, get_clock
from latchkey.models import AuthToken, Clock, TokenKind
from latchkey.schemas.common import PaginatedResponse, PaginationParams
from latchkey.services.tokens import token_prefix

logger = logging.getLogger(__name__)

router = APIRouter()


class TokenSummary(BaseModel):
    """Token row as shown to admins. The value is truncated."""

    id: str
    token: str
    user_id: str
    kind: TokenKind
    expires_at: datetime
    used_at: datetime | None
    created_at: datetime
    is_expired: bool

    @classmethod
    def from_token(cls, token: AuthToken, now: datetime) -> "TokenSummary":
        return cls(
            id=token.id,
            token=token_prefix(token.token),
            user_id=token.user_id,
            kind=token.kind,
            expires_at=token.expires_at,
            used_at=token.used_at,
            created_at=token.created_at,
            is_expired=token.is_expired(now),
        )


class ClearTokensResponse(BaseModel):
    deleted: int


class SweepResponse(BaseModel):
    removed: int
    reminders_sent: int
    reminders_failed: int


@router.get("/tokens", response_model=PaginatedResponse[TokenSummary])
async def list_tokens(
    _admin: AdminClaims,
    store: StoreDep,
    clock: Annotated[Clock, Depends(get_clock)],
    pagination: Annotated[PaginationParams, Depends()],
):
    """List issued tokens, newest first."""
    now = clock()
    tokens = await store.list_tokens(offset=pagination.offset, limit=pagination.limit)
    total = await store.count_tokens()
    return PaginatedResponse[TokenSummary](
        items=[TokenSummary.from_token(token, now) for token in tokens],
        total=total,
        offset=pagination.offset,
        limit=pagination.limit,
    )


@router.delete("/tokens", response_model=ClearTokensResponse)
async def clear_tokens(admin: AdminClaims, store: StoreDep):
    """Delete every token. Every outstanding link and QR key stops working."""
    deleted = await store.delete_all_tokens()
    await store.commit()
    logger.warning(f"Admin {admin.user_id} cleared {deleted} tokens")
    return ClearTokensResponse(deleted=deleted)


@router.post("/tokens/sweep", response_model=SweepResponse)
async def sweep_tokens(_admin: AdminClaims, auth: AuthServiceDep):
    """Run the expired token sweep now."""
    result = await auth.sweep()
    return SweepResponse(**result.to_dict())
