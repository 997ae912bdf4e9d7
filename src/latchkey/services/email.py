"""Email service for sending transactional emails."""

import base64
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
import httpx

from latchkey.config import settings
from latchkey.services.resilience import with_retry
from latchkey.services.roles import SignupIntent

logger = logging.getLogger(__name__)

QR_KEY_CID = "qr-key"


@dataclass(frozen=True)
class EmailAttachment:
    """Inline attachment referenced from HTML as ``cid:<content_id>``."""

    filename: str
    content: bytes
    content_type: str = "image/png"
    content_id: str | None = None


class EmailBackend(ABC):
    """Abstract base class for email backends."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        attachments: Sequence[EmailAttachment] = (),
    ) -> bool:
        """Send an email.

        Args:
            to: Recipient email address
            subject: Email subject
            html: HTML content
            text: Plain text content (optional, derived from html if not provided)
            attachments: Inline attachments

        Returns:
            True if sent successfully
        """
        pass


class ConsoleEmailBackend(EmailBackend):
    """Email backend that logs to console (for development)."""

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        attachments: Sequence[EmailAttachment] = (),
    ) -> bool:
        """Log email to console instead of sending."""
        attached = ", ".join(f"{a.filename} ({len(a.content)} bytes)" for a in attachments)
        logger.info(
            f"\n{'='*60}\n"
            f"EMAIL (console backend - not sent)\n"
            f"{'='*60}\n"
            f"To: {to}\n"
            f"Subject: {subject}\n"
            f"Attachments: {attached or 'none'}\n"
            f"{'='*60}\n"
            f"{text or html}\n"
            f"{'='*60}\n"
        )
        return True


class SMTPEmailBackend(EmailBackend):
    """Email backend using SMTP."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        use_tls: bool = True,
        from_address: str = "",
        max_attempts: int = 3,
        retry_wait: float = 1.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait

    def build_message(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        attachments: Sequence[EmailAttachment] = (),
    ) -> MIMEMultipart:
        body = MIMEMultipart("alternative")

        # Add plain text part
        if text:
            body.attach(MIMEText(text, "plain"))

        # Add HTML part
        body.attach(MIMEText(html, "html"))

        if not attachments:
            message = body
        else:
            message = MIMEMultipart("related")
            message.attach(body)
            for attachment in attachments:
                subtype = attachment.content_type.split("/", 1)[-1]
                part = MIMEImage(attachment.content, _subtype=subtype)
                part.add_header("Content-Disposition", "inline", filename=attachment.filename)
                if attachment.content_id:
                    part.add_header("Content-ID", f"<{attachment.content_id}>")
                message.attach(part)

        message["From"] = self.from_address
        message["To"] = to
        message["Subject"] = subject
        return message

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        attachments: Sequence[EmailAttachment] = (),
    ) -> bool:
        """Send email via SMTP."""
        message = self.build_message(to, subject, html, text, attachments)

        try:
            await with_retry(
                aiosmtplib.send,
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                start_tls=self.use_tls,
                max_attempts=self.max_attempts,
                min_wait=self.retry_wait,
            )
            logger.info(f"Email sent via SMTP to {to}")
            return True
        except Exception as e:
            logger.error(f"Failed to send email via SMTP to {to}: {e}")
            return False


class ResendEmailBackend(EmailBackend):
    """Email backend using Resend API."""

    api_url = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: str,
        from_address: str,
        max_attempts: int = 3,
        retry_wait: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.from_address = from_address
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait
        self.transport = transport

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        attachments: Sequence[EmailAttachment] = (),
    ) -> bool:
        """Send email via Resend API."""
        payload: dict = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        if attachments:
            payload["attachments"] = [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode(),
                    "content_type": a.content_type,
                    **({"content_id": a.content_id} if a.content_id else {}),
                }
                for a in attachments
            ]

        async with httpx.AsyncClient(transport=self.transport) as client:

            async def _post() -> httpx.Response:
                response = await client.post(
                    self.api_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                    timeout=30.0,
                )
                response.raise_for_status()
                return response

            try:
                await with_retry(_post, max_attempts=self.max_attempts, min_wait=self.retry_wait)
                logger.info(f"Email sent via Resend to {to}")
                return True
            except httpx.HTTPStatusError as e:
                logger.error(f"Resend API error: {e.response.status_code} - {e.response.text}")
                return False
            except Exception as e:
                logger.error(f"Failed to send email via Resend to {to}: {e}")
                return False


def get_email_backend() -> EmailBackend:
    """Get the configured email backend."""
    if settings.email_backend == "console":
        return ConsoleEmailBackend()
    elif settings.email_backend == "smtp":
        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.email_from,
            max_attempts=settings.email_max_attempts,
        )
    elif settings.email_backend == "resend":
        return ResendEmailBackend(
            api_key=settings.resend_api_key,
            from_address=settings.email_from,
            max_attempts=settings.email_max_attempts,
        )
    else:
        raise ValueError(f"Unknown email backend: {settings.email_backend}")


def _layout(title: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="text-align: center; margin-bottom: 30px;">
        <h1 style="color: #1a1a1a; margin: 0;">Latchkey</h1>
    </div>

    <div style="background: #f9fafb; border-radius: 8px; padding: 30px; margin-bottom: 30px;">
        <h2 style="margin-top: 0; color: #1a1a1a;">{title}</h2>
        {body}
    </div>
</body>
</html>
"""


def _button(href: str, label: str) -> str:
    return f"""
        <div style="text-align: center; margin: 30px 0;">
            <a href="{href}"
               style="background: #2563eb; color: white; padding: 12px 30px; border-radius: 6px; text-decoration: none; font-weight: 500; display: inline-block;">
                {label}
            </a>
        </div>
"""


def magic_link_subject(intent: SignupIntent, community_verified: bool) -> str:
    """Subject line for a magic link email."""
    if intent == SignupIntent.BUSINESS_ADVERTISING:
        if community_verified:
            return "Your Latchkey business advertising access link"
        return "Your Latchkey business advertising request"
    if community_verified:
        return "Your Latchkey community access link"
    return "Your Latchkey access request"


class EmailService:
    """High-level email service for sending application emails."""

    def __init__(self, backend: EmailBackend | None = None):
        self._backend = backend

    @property
    def backend(self) -> EmailBackend:
        """Lazy-load the backend."""
        if self._backend is None:
            self._backend = get_email_backend()
        return self._backend

    async def send_magic_link(
        self,
        to: str,
        magic_link: str,
        *,
        intent: SignupIntent = SignupIntent.GENERAL,
        community_verified: bool = True,
    ) -> bool:
        """Send a magic link authentication email.

        Args:
            to: Recipient email address
            magic_link: The full magic link URL
            intent: Why the link was requested
            community_verified: Whether the account already has community access

        Returns:
            True if sent successfully
        """
        subject = magic_link_subject(intent, community_verified)
        minutes = settings.magic_link_expiration_minutes

        if intent == SignupIntent.BUSINESS_ADVERTISING:
            intro = "Sign in to manage your business advertising."
        elif community_verified:
            intro = "Sign in to your community account."
        else:
            intro = (
                "Sign in to browse. Posting is limited to verified community members; "
                "your account can be upgraded later."
            )

        html = _layout(
            "Sign in to your account",
            f"""
        <p>{intro} This link will expire in {minutes} minutes and works once.</p>
        {_button(magic_link, "Sign in")}
        <p style="color: #666; font-size: 14px;">
            If you didn't request this email, you can safely ignore it.
        </p>
        <p style="color: #666; font-size: 12px;">
            If the button doesn't work, copy and paste this link into your browser:<br>
            <a href="{magic_link}" style="color: #2563eb; word-break: break-all;">{magic_link}</a>
        </p>
""",
        )

        text = f"""
{subject}
==================

{intro}
This link will expire in {minutes} minutes and works once.

{magic_link}

If you didn't request this email, you can safely ignore it.
"""

        return await self.backend.send(to=to, subject=subject, html=html, text=text)

    async def send_qr_key(
        self,
        to: str,
        png: bytes,
        backup_url: str,
        *,
        expiration_days: int | None = None,
    ) -> bool:
        """Send a user their QR key with a backup link.

        Args:
            to: Recipient email address
            png: Rendered QR code
            backup_url: Verification URL encoded in the QR code
            expiration_days: Validity shown to the user

        Returns:
            True if sent successfully
        """
        days = expiration_days or settings.qr_key_expiration_days
        subject = "Your Latchkey QR key"

        html = _layout(
            "Your personal QR key",
            f"""
        <div style="text-align: center; margin: 30px 0;">
            <img src="cid:{QR_KEY_CID}" alt="Latchkey QR key" style="max-width: 200px;" />
        </div>
        <p>Save or print this code and scan it to sign in. It can be reused for {days} days.</p>
        <p>Can't scan the code? Use this link instead, it works the same way:</p>
        {_button(backup_url, "Sign in")}
        <p style="color: #666; font-size: 14px;">
            We'll remind you when it's time to renew.
        </p>
""",
        )

        text = f"""
Your Latchkey QR key
==================

Your QR key is attached. Scan it to sign in; it can be reused for {days} days.

Backup link:
{backup_url}
"""

        attachment = EmailAttachment(filename="qr-key.png", content=png, content_id=QR_KEY_CID)
        return await self.backend.send(
            to=to, subject=subject, html=html, text=text, attachments=[attachment]
        )

    async def send_qr_renewal_reminder(self, to: str, renew_url: str) -> bool:
        """Tell a user their QR key expired and how to get a new one.

        Args:
            to: Recipient email address
            renew_url: Where the user can request a fresh login link

        Returns:
            True if sent successfully
        """
        subject = "Time to renew your Latchkey QR key"

        html = _layout(
            "Your QR key has expired",
            f"""
        <p>Your QR key is no longer valid. Request a new sign-in link and we'll send you a fresh key.</p>
        {_button(renew_url, "Renew my key")}
""",
        )

        text = f"""
Your QR key has expired
==================

Request a new sign-in link and we'll send you a fresh key:

{renew_url}
"""

        return await self.backend.send(to=to, subject=subject, html=html, text=text)


# Global email service instance
email_service = EmailService()
