"""
auth/mailer.py -- Outbound "send verification/reset link" collaborator.

The ledgers build the link and hand it over; delivery is this module's only
job. LoggingLinkMailer is the dev default (nothing leaves the process, the
recipient is redacted in the log line). SmtpLinkMailer delivers over SMTP when
SMTP_HOST and FROM_EMAIL are configured.

Raw links are never logged: they are bearer secrets until consumed.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from auth.models import Account
from core.config import Settings, get_settings

logger = logging.getLogger("sessiongate.mailer")


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LinkMailer(ABC):
    """Base mailer. Subclasses implement _deliver()."""

    def send_verification_link(self, account: Account, link: str, ttl_hours: int) -> None:
        text = (
            f"Hello {account.full_name},\n\n"
            f"Please verify your email address by opening the following link:\n{link}\n\n"
            f"This link will expire in {ttl_hours} hours.\n\n"
            "If you didn't create an account, please ignore this email."
        )
        self._deliver(account.email, "Verify your email address", text)

    def send_reset_link(self, account: Account, link: str, ttl_minutes: int) -> None:
        text = (
            f"Hello {account.full_name},\n\n"
            f"A password reset was requested for your account. Open this link to choose a new password:\n{link}\n\n"
            f"This link will expire in {ttl_minutes} minutes.\n\n"
            "If you didn't request a reset, you can ignore this email; your password is unchanged."
        )
        self._deliver(account.email, "Reset your password", text)

    @abstractmethod
    def _deliver(self, to_email: str, subject: str, text: str) -> None: ...


class LoggingLinkMailer(LinkMailer):
    """Dev-mode mailer: records that a message would have been sent."""

    def _deliver(self, to_email: str, subject: str, text: str) -> None:
        logger.info("Email (dev mode, not sent) to=%s subject=%r", redact_email(to_email), subject)


class SmtpLinkMailer(LinkMailer):
    """SMTP delivery with STARTTLS (port 587) or implicit TLS (port 465)."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        from_email: str = "",
        from_name: str = "SessionGate",
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email or user
        self.from_name = from_name

    def _deliver(self, to_email: str, subject: str, text: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain"))

        context = ssl.create_default_context()
        try:
            if self.port == 465:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=30) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, OSError):
            # Delivery failure must not undo the ledger write: the token is
            # already live and the user can ask for another after the cool-down.
            logger.exception("Email delivery failed to=%s subject=%r", redact_email(to_email), subject)
            return
        logger.info("Email sent to=%s subject=%r", redact_email(to_email), subject)


def mailer_from_settings(settings: Settings | None = None) -> LinkMailer:
    """Return SmtpLinkMailer when SMTP is configured, LoggingLinkMailer otherwise."""
    settings = settings or get_settings()
    if settings.smtp_host and (settings.from_email or settings.smtp_user):
        return SmtpLinkMailer(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            from_email=settings.from_email,
        )
    return LoggingLinkMailer()
