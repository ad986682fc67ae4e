from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from careauth.config import Settings
from careauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 32px 16px;">
    <h1>{heading}</h1>
    {paragraphs}
    {action}
    <p style="margin-top: 32px; font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""


class EmailNotifier:
    """Sends account emails over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    keeps development and test deployments self-contained.
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
        from_name: str = "HealthCare AI",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        heading: str,
        paragraphs: list[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> tuple[str, str]:
        body = "\n    ".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        action = ""
        text_action = ""
        if action_url:
            safe_url = html.escape(action_url, quote=True)
            action = (
                f'<p><a href="{safe_url}">{html.escape(action_label or action_url)}</a></p>'
                f"\n    <p>If the link doesn't work, copy this URL: {safe_url}</p>"
            )
            text_action = f"\n{action_url}\n"
        html_body = _HTML_TEMPLATE.format(
            heading=html.escape(heading),
            paragraphs=body,
            action=action,
            sender=html.escape(self.from_name),
        )
        text_body = "\n\n".join([heading, *paragraphs]) + "\n" + text_action + f"\n---\n{self.from_name}\n"
        return html_body, text_body

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
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
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={quote(token)}"
        html_body, text_body = self._render(
            "Verify your email address",
            [
                "Thanks for registering. Please confirm your email address to activate your account.",
                "This link expires in 24 hours.",
            ],
            action_url=verify_url,
            action_label="Verify email",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={quote(token)}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                "This link expires in 1 hour. If you didn't request a reset, you can ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset password",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password on your account was just changed and other devices were signed out.",
                "If you didn't make this change, reset your password and contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication is now enabled on your account.",
                "You will need a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(
            to_email, "Two-factor authentication enabled", html_body, text_body
        )
