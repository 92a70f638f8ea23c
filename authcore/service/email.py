from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
  <h1>{heading}</h1>
  <p>{intro}</p>
  <p><a href="{url}">{action}</a></p>
  <p>This link expires in {ttl}.</p>
  <p>If you didn't request this, you can safely ignore this email.</p>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

This link expires in {ttl}.

If you didn't request this, you can safely ignore this email.
"""


class EmailService:
    """SMTP notifier for verification and password-reset messages.

    When SMTP is not configured messages are logged instead of sent.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "authcore",
        base_url: Optional[str] = None,
        verify_ttl_label: str = "24 hours",
        reset_ttl_label: str = "30 minutes",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.verify_ttl_label = verify_ttl_label
        self.reset_ttl_label = reset_ttl_label

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            verify_ttl_label=f"{settings.email_verify_ttl_hours} hours",
            reset_ttl_label=f"{settings.password_reset_ttl_minutes} minutes",
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """Send a message; returns False when delivery failed."""
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=self._redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused", recipient=self._redact_email(to_email), error=str(exc)
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connect_failed", host=self.smtp_host, port=self.smtp_port, error=str(exc)
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def _render(self, *, heading: str, intro: str, action: str, url: str, ttl: str) -> tuple[str, str]:
        fields = {"heading": heading, "intro": intro, "action": action, "url": url, "ttl": ttl}
        return _TEXT_TEMPLATE.format(**fields), _HTML_TEMPLATE.format(**fields)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email?{urlencode({'token': token})}"
        text_body, html_body = self._render(
            heading="Verify your email",
            intro="Confirm your email address by opening the link below:",
            action="Verify email",
            url=url,
            ttl=self.verify_ttl_label,
        )
        return self.send(to_email, "Verify your email", text_body, html_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password?{urlencode({'token': token})}"
        text_body, html_body = self._render(
            heading="Reset your password",
            intro="We received a request to reset your password. Choose a new one here:",
            action="Reset password",
            url=url,
            ttl=self.reset_ttl_label,
        )
        return self.send(to_email, "Reset your password", text_body, html_body)
