"""Authentication endpoints."""

import logging
from dataclasses import asdict
from datetime import datetime
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, EmailStr

from latchkey.api.deps import (
    ApiRateLimit,
    AuthServiceDep,
    CurrentClaims,
    IssueRateLimit,
    VerifyRateLimit,
    get_client_ip,
)
from latchkey.config import settings
from latchkey.errors import TokenError, TokenExpiredError, UserNotFoundError
from latchkey.models import TokenKind, UserRead
from latchkey.schemas.common import SuccessResponse
from latchkey.services.auth import AuthService
from latchkey.services.roles import OriginContext, SignupIntent
from latchkey.services.tokens import VerifiedToken

logger = logging.getLogger(__name__)

router = APIRouter()

# Same wording for every failure so responses do not reveal why a token was refused
INVALID_TOKEN_DETAIL = "Invalid or expired token"


class MagicLinkRequest(BaseModel):
    """Request body for a magic link."""

    email: EmailStr
    context: SignupIntent = SignupIntent.GENERAL


class MagicLinkResponse(BaseModel):
    """Response for a magic link request."""

    message: str
    community_verified: bool
    email_sent: bool
    # In development, include the magic link for testing
    magic_link: str | None = None


class VerifyRequest(BaseModel):
    """Request body for token verification."""

    token: str


class TokenResponse(BaseModel):
    """Response containing the session credential."""

    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    kind: TokenKind
    user: UserRead


class SessionResponse(BaseModel):
    """Claims of the current session."""

    user_id: str
    email: str
    community_verified: bool
    is_admin: bool
    issued_at: datetime
    expires_at: datetime


class QRKeyResponse(BaseModel):
    """A user's QR key and its rendered code."""

    token: str
    verify_url: str
    image: str
    expires_at: datetime
    reused: bool


def app_redirect(**params: str) -> RedirectResponse:
    """Redirect to the app root with query parameters."""
    url = f"{settings.app_url.rstrip('/')}/?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


def set_session_cookie(response: Response, credential: str) -> None:
    """Set the HTTP-only session cookie."""
    response.set_cookie(
        key=settings.session_cookie_name,
        value=credential,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.session_cookie_samesite,
        path="/",
        max_age=settings.session_lifetime_minutes * 60,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.session_cookie_samesite,
    )


def invalid_token() -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_TOKEN_DETAIL)


async def remind_expired_qr_key(auth: AuthService, error: TokenExpiredError) -> None:
    """Send a renewal reminder for an expired QR key."""
    try:
        await auth.send_renewal_reminder(error.user_id)
    except UserNotFoundError:
        logger.warning(f"Expired QR key owner {error.user_id} no longer exists")


@router.post("/magic-link", response_model=MagicLinkResponse)
async def request_magic_link(
    body: MagicLinkRequest,
    request: Request,
    auth: AuthServiceDep,
    _rate_limit: IssueRateLimit,
):
    """
    Request a magic link for authentication.

    Creates the account on first contact. New accounts are community verified
    when the request comes from a community network or a business advertiser.
    """
    origin = OriginContext(ip_address=get_client_ip(request), intent=body.context)
    issued = await auth.issue_magic_link(body.email, origin)

    # Send the magic link email
    email_sent = await auth.send_magic_link(issued, origin)

    if not email_sent and settings.is_production:
        # In production, fail if email couldn't be sent
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send magic link email",
        )

    response = MagicLinkResponse(
        message="Check your email for a magic link",
        community_verified=issued.user.community_verified,
        email_sent=email_sent,
    )

    # Include magic link in development for testing
    if settings.is_development:
        response.magic_link = f"{settings.verify_path}?{urlencode({'token': issued.token.token})}"

    return response


async def complete_login(auth: AuthService, verified: VerifiedToken) -> str:
    """Mint the session for a verified token and send follow-ups."""
    credential = auth.mint_session(verified.user)

    # Only magic link logins hand out the QR key; QR logins already have one
    if verified.kind == TokenKind.MAGIC_LINK:
        await auth.deliver_qr_key(verified.user)

    return credential


@router.get("/verify")
async def verify_link(
    auth: AuthServiceDep,
    _rate_limit: VerifyRateLimit,
    token: str = Query(min_length=1),
):
    """
    Browser flow for links and scanned QR keys.

    Sets the session cookie and redirects back to the app.
    """
    try:
        verified = await auth.verify_token(token)
    except TokenExpiredError as e:
        if e.kind.renew_on_expiry:
            await remind_expired_qr_key(auth, e)
            return app_redirect(expired="qr_key")
        raise invalid_token() from e
    except TokenError as e:
        raise invalid_token() from e

    credential = await complete_login(auth, verified)

    response = app_redirect(auth="success")
    set_session_cookie(response, credential)
    return response


@router.post("/verify", response_model=TokenResponse)
async def verify(
    body: VerifyRequest,
    response: Response,
    auth: AuthServiceDep,
    _rate_limit: VerifyRateLimit,
):
    """
    Verify a token and return a session credential.
    """
    try:
        verified = await auth.verify_token(body.token)
    except TokenExpiredError as e:
        # The owner learns about renewal by mail; the response stays generic
        if e.kind.renew_on_expiry:
            await remind_expired_qr_key(auth, e)
        raise invalid_token() from e
    except TokenError as e:
        raise invalid_token() from e

    credential = await complete_login(auth, verified)
    set_session_cookie(response, credential)

    claims = auth.read_session(credential)
    return TokenResponse(
        access_token=credential,
        expires_at=claims.expires_at,
        kind=verified.kind,
        user=UserRead.model_validate(verified.user),
    )


@router.get("/me", response_model=SessionResponse)
async def get_current_session(claims: CurrentClaims):
    """Get the current session's claims."""
    return SessionResponse(**asdict(claims))


@router.post("/logout", response_model=SuccessResponse)
@router.get("/logout", response_model=SuccessResponse)
async def logout(response: Response):
    """
    Logout endpoint.

    Sessions are stateless, so this only clears the cookie.
    """
    clear_session_cookie(response)
    return SuccessResponse(message="Logged out successfully")


@router.get("/qr-key", response_model=QRKeyResponse)
async def get_qr_key(claims: CurrentClaims, auth: AuthServiceDep, _rate_limit: ApiRateLimit):
    """Get the current user's QR key, minting one if none is valid."""
    artifact = await auth.issue_or_reuse_qr_key(claims.user_id)
    return QRKeyResponse(
        token=artifact.token,
        verify_url=artifact.verify_url,
        image=artifact.data_url,
        expires_at=artifact.expires_at,
        reused=artifact.reused,
    )
