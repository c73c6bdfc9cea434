"""
auth/mailer.py -- Transactional email dispatch for the auth flows.

Three message kinds: confirmation link, password reset link, and two-factor
access code. Bodies are plain text plus a minimal HTML alternative; full
template rendering belongs to the frontend.

Delivery:
  SMTP via smtplib, run in the thread pool so the event loop is never
  blocked, with a hard timeout on both the socket and the awaiting coroutine.
  Any failure (connect, auth, send, timeout) surfaces as EmailDispatchError.
  Callers decide whether that is fatal (registration, 2FA) or only logged
  (password reset, where revealing failure would leak account existence).

  When EMAIL_HOST is empty the message is logged instead of sent (dev mode).
  Log lines carry a redacted address only.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum

from starlette.concurrency import run_in_threadpool

from auth.errors import EmailDispatchError
from core.config import Settings

logger = logging.getLogger("tokengate.auth.mailer")


class EmailKind(str, Enum):
    CONFIRMATION = "confirmation"
    RESET = "reset"
    TWO_FACTOR = "two_factor"


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailDispatcher:
    """Render and send auth emails.

    Usage:
        mailer = EmailDispatcher(settings)
        await mailer.send("a@example.com", EmailKind.CONFIRMATION, {"name": "Alice", "token": t})
    """

    def __init__(self, settings: Settings) -> None:
        self.host = settings.email_host
        self.port = settings.email_port
        self.user = settings.email_user
        self.password = settings.email_password
        self.from_email = settings.email_from or settings.email_user
        self.use_tls = settings.email_use_tls
        self.timeout = settings.email_timeout_seconds
        self.frontend_url = settings.frontend_url.rstrip("/")
        self.code_ttl_minutes = max(1, settings.two_factor_code_ttl // 60)

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    async def send(self, address: str, template_kind: EmailKind, payload: dict) -> None:
        """Render and deliver one message. Raises EmailDispatchError on failure."""
        subject, text_body, html_body = self.render(template_kind, payload)

        if not self.is_configured:
            logger.info(
                "Email not configured; would send %s to %s:\n%s",
                template_kind.value,
                redact_email(address),
                text_body,
            )
            return

        try:
            await asyncio.wait_for(
                run_in_threadpool(self._deliver, address, subject, text_body, html_body),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, smtplib.SMTPException, OSError) as exc:
            logger.error(
                "Failed to send %s email to %s: %s", template_kind.value, redact_email(address), type(exc).__name__
            )
            raise EmailDispatchError() from exc
        logger.info("Sent %s email to %s", template_kind.value, redact_email(address))

    def render(self, template_kind: EmailKind, payload: dict) -> tuple[str, str, str]:
        """Return (subject, text_body, html_body) for a message kind."""
        name = payload.get("name", "")
        if template_kind is EmailKind.CONFIRMATION:
            link = f"{self.frontend_url}/confirmation/{payload['token']}"
            subject = f"Email confirmation, {name}"
            text_body = (
                f"Hello {name},\n\nConfirm your account by opening this link:\n{link}\n\n"
                "This link will expire in an hour."
            )
        elif template_kind is EmailKind.RESET:
            link = f"{self.frontend_url}/reset-password/{payload['token']}"
            subject = f"Password reset, {name}"
            text_body = (
                f"Hello {name},\n\nReset your password by opening this link:\n{link}\n\n"
                "This link will expire in 30 minutes. If you did not ask for a reset, ignore this email."
            )
        elif template_kind is EmailKind.TWO_FACTOR:
            subject = f"Your access code, {name}"
            text_body = (
                f"Hello {name},\n\nYour access code is {payload['code']}\n\n"
                f"This code will expire in {self.code_ttl_minutes} minutes."
            )
        else:
            raise ValueError(f"Unknown email kind: {template_kind!r}")
        paragraphs = html.escape(text_body).split("\n\n")
        html_body = "<p>" + "</p><p>".join(paragraphs).replace("\n", "<br />") + "</p>"
        return subject, text_body, html_body

    def _deliver(self, address: str, subject: str, text_body: str, html_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = address
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.from_email, [address], msg.as_string())
