from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional, Set

import httpx

from portal_access.logging import get_logger, sanitize_error_message
from portal_access.storage.models import MagicLink, OTPVerification, TenantPortalConfig

logger = get_logger(__name__)


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _redact_phone(phone: str) -> str:
    digits = [c for c in phone if c.isdigit()]
    return f"***{''.join(digits[-2:])}" if digits else "redacted"


class EmailService:
    """SMTP delivery for portal emails; logs instead of sending when unconfigured."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Customer Portal",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message. Returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=_redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=_redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=_redact_email(to_email), subject=subject)
        return True


class SmsSender:
    """Posts text messages to an HTTP SMS gateway."""

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        *,
        api_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_token = api_token
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    def send(self, to_phone: str, message: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=_redact_phone(to_phone), length=len(message))
            return True
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.gateway_url, json={"to": to_phone, "message": message}, headers=headers
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_gateway_rejected",
                to=_redact_phone(to_phone),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_send_failed",
                to=_redact_phone(to_phone),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_sent", to=_redact_phone(to_phone))
        return True


def _brand_name(config: Optional[TenantPortalConfig]) -> str:
    if config and config.company_name:
        return config.company_name
    return "Your contractor"


def _html_page(title: str, body: str, config: Optional[TenantPortalConfig]) -> str:
    color = "#1f6feb"
    if config and isinstance(config.branding.get("primary_color"), str):
        color = html.escape(config.branding["primary_color"])
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 32px 20px;">
    <h1 style="color: {color};">{html.escape(title)}</h1>
    {body}
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{html.escape(_brand_name(config))}</p>
  </div>
</body>
</html>
"""


class Notifier:
    """Fire-and-forget delivery of portal messages.

    Sends run in worker threads. With ``background=True`` the caller gets
    control back immediately and failures are only logged; otherwise the send
    is awaited inline, which keeps tests deterministic. Neither mode raises.
    """

    def __init__(
        self,
        email: EmailService,
        sms: SmsSender,
        *,
        background: bool = True,
    ) -> None:
        self.email = email
        self.sms = sms
        self.background = background
        self._pending: Set[asyncio.Task] = set()

    async def _run(
        self,
        kind: str,
        fn: Callable[..., bool],
        *args: Any,
        on_done: Optional[Callable[[bool, Optional[str]], None]] = None,
    ) -> bool:
        error: Optional[str] = None
        try:
            ok = bool(await asyncio.to_thread(fn, *args))
        except Exception as exc:
            logger.error(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            ok, error = False, sanitize_error_message(f"{type(exc).__name__}: {exc}")
        if not ok and error is None:
            error = "delivery_failed"
        if on_done is not None:
            try:
                on_done(ok, error)
            except Exception as exc:
                logger.error("notification_callback_failed", kind=kind, error=str(exc))
        return ok

    async def submit(
        self,
        kind: str,
        fn: Callable[..., bool],
        *args: Any,
        on_done: Optional[Callable[[bool, Optional[str]], None]] = None,
    ) -> Optional[bool]:
        if not self.background:
            return await self._run(kind, fn, *args, on_done=on_done)
        task = asyncio.get_running_loop().create_task(
            self._run(kind, fn, *args, on_done=on_done)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return None

    async def drain(self) -> None:
        """Wait for in-flight background sends."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def send_magic_link(
        self, link: MagicLink, url: str, config: Optional[TenantPortalConfig]
    ) -> Optional[bool]:
        brand = _brand_name(config)
        expires = link.expires_at.strftime("%B %d, %Y")
        if link.email:
            subject = f"{brand}: your project portal link"
            text = (
                f"{brand} has shared your project portal with you.\n\n"
                f"Open your portal: {url}\n\nThis link expires on {expires}.\n"
            )
            body = (
                f"<p>{html.escape(brand)} has shared your project portal with you.</p>"
                f'<p><a href="{html.escape(url)}">Open your portal</a></p>'
                f"<p>This link expires on {expires}.</p>"
            )
            return await self.submit(
                "magic_link_email",
                self.email.send,
                link.email,
                subject,
                _html_page("Your project portal", body, config),
                text,
            )
        if link.phone:
            message = f"{brand}: view your project portal at {url} (expires {expires})"
            return await self.submit("magic_link_sms", self.sms.send, link.phone, message)
        logger.warning("magic_link_no_recipient", link_id=link.id)
        return None

    async def send_otp(
        self,
        otp: OTPVerification,
        config: Optional[TenantPortalConfig],
        *,
        ttl_minutes: int,
        on_done: Optional[Callable[[bool, Optional[str]], None]] = None,
    ) -> Optional[bool]:
        brand = _brand_name(config)
        if otp.delivery_method == "sms":
            message = f"{brand}: your verification code is {otp.code}. It expires in {ttl_minutes} minutes."
            return await self.submit(
                "otp_sms", self.sms.send, otp.delivery_target, message, on_done=on_done
            )
        subject = f"{brand}: your verification code"
        text = (
            f"Your verification code is {otp.code}.\n\n"
            f"It expires in {ttl_minutes} minutes. If you did not request it, ignore this email.\n"
        )
        body = (
            f"<p>Your verification code is:</p>"
            f'<p style="font-size: 28px; letter-spacing: 6px;"><strong>{otp.code}</strong></p>'
            f"<p>It expires in {ttl_minutes} minutes.</p>"
        )
        return await self.submit(
            "otp_email",
            self.email.send,
            otp.delivery_target,
            subject,
            _html_page("Verification code", body, config),
            text,
            on_done=on_done,
        )

    async def send_link_extended(
        self, link: MagicLink, url: str, config: Optional[TenantPortalConfig]
    ) -> Optional[bool]:
        if not link.email:
            return None
        brand = _brand_name(config)
        expires = link.expires_at.strftime("%B %d, %Y")
        text = f"Your portal access has been extended until {expires}.\n\nOpen your portal: {url}\n"
        body = (
            f"<p>Your portal access has been extended until {expires}.</p>"
            f'<p><a href="{html.escape(url)}">Open your portal</a></p>'
        )
        return await self.submit(
            "link_extended_email",
            self.email.send,
            link.email,
            f"{brand}: portal access extended",
            _html_page("Portal access extended", body, config),
            text,
        )
