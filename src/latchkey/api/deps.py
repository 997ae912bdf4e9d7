"""FastAPI dependencies for dependency injection."""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.config import settings
from latchkey.database import get_session
from latchkey.errors import InvalidSessionError
from latchkey.models import Clock, utcnow
from latchkey.services.auth import AuthService
from latchkey.services.email import EmailService, email_service
from latchkey.services.rate_limit import (
    RateLimitType,
    get_rate_limiter,
    rate_limit_headers,
)
from latchkey.services.roles import client_address, parse_networks
from latchkey.services.sessions import SessionClaims
from latchkey.services.store import IdentityStore

logger = logging.getLogger(__name__)

# Type alias for database session dependency
SessionDep = Annotated[AsyncSession, Depends(get_session)]

# Security scheme
security = HTTPBearer(auto_error=False)


def get_clock() -> Clock:
    """Source of the current time. Overridden in tests."""
    return utcnow


def get_email_service() -> EmailService:
    return email_service


async def get_store(session: SessionDep) -> IdentityStore:
    return IdentityStore(session)


StoreDep = Annotated[IdentityStore, Depends(get_store)]


async def get_auth_service(
    store: StoreDep,
    clock: Annotated[Clock, Depends(get_clock)],
    emails: Annotated[EmailService, Depends(get_email_service)],
) -> AuthService:
    return AuthService(store, emails=emails, clock=clock)


AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]


def get_client_ip(request: Request) -> str | None:
    """Client address, honoring forwarding headers only from trusted proxies."""
    peer = request.client.host if request.client else None
    if not settings.trust_proxy_headers:
        return peer
    return client_address(
        peer,
        forwarded_for=request.headers.get("x-forwarded-for"),
        real_ip=request.headers.get("x-real-ip"),
        trusted_proxies=parse_networks(settings.trusted_proxies),
    )


def get_session_credential(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
) -> str | None:
    """Session credential from the Authorization header or the session cookie."""
    if credentials:
        return credentials.credentials
    return request.cookies.get(settings.session_cookie_name)


async def get_current_claims(
    request: Request,
    auth: AuthServiceDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> SessionClaims:
    """Get current session claims or raise 401."""
    credential = get_session_credential(request, credentials)
    if not credential:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return auth.read_session(credential)
    except InvalidSessionError as e:
        logger.debug(f"Session verification failed: {e!r}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_admin_claims(
    claims: Annotated[SessionClaims, Depends(get_current_claims)],
) -> SessionClaims:
    """Get current session claims and verify they belong to an admin."""
    if not claims.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return claims


# Type aliases for common dependencies
CurrentClaims = Annotated[SessionClaims, Depends(get_current_claims)]
AdminClaims = Annotated[SessionClaims, Depends(get_admin_claims)]


class RateLimitDependency:
    """Dependency class for rate limiting endpoints.

    Usage:
        @router.post("/endpoint")
        async def endpoint(
            rate_limit: Annotated[None, Depends(RateLimitDependency(RateLimitType.ISSUE))]
        ):
            ...
    """

    def __init__(self, limit_type: RateLimitType) -> None:
        self.limit_type = limit_type

    async def __call__(self, request: Request) -> None:
        """Check rate limit and raise 429 if exceeded."""
        client = get_client_ip(request) or "unknown"
        result = await get_rate_limiter().check(client, self.limit_type)

        if not result.success:
            headers = rate_limit_headers(result)
            retry_after = headers.get("Retry-After", "60")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded. Please try again in {retry_after} seconds.",
                headers=headers,
            )


# Pre-configured rate limit dependencies
IssueRateLimit = Annotated[None, Depends(RateLimitDependency(RateLimitType.ISSUE))]
VerifyRateLimit = Annotated[None, Depends(RateLimitDependency(RateLimitType.VERIFY))]
ApiRateLimit = Annotated[None, Depends(RateLimitDependency(RateLimitType.API))]
