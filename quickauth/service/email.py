from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from quickauth.config import Settings
from quickauth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    error: Optional[str] = None


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #ff6b35; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{brand}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail over SMTP.

    When SMTP is not configured, or the service runs in dev dispatch mode,
    messages are logged instead of sent. ``send`` never raises.
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
        from_name: str = "Quick Commerce",
        base_url: Optional[str] = None,
        dev_mode: bool = False,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.dev_mode = dev_mode
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

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
            dev_mode=settings.dev_dispatch,
            verification_ttl_hours=settings.email_verification_ttl_hours,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> DispatchResult:
        if self.dev_mode or not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                configured=self.is_configured,
            )
            return DispatchResult(success=True)

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return DispatchResult(success=True)

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return DispatchResult(success=False, error="smtp_auth_failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(e)
            )
            return DispatchResult(success=False, error="recipient_refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DispatchResult(success=False, error=type(e).__name__)
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DispatchResult(success=False, error=type(e).__name__)

    def _compose(
        self, title: str, paragraphs: list[str], *, link: Optional[tuple[str, str]] = None
    ) -> tuple[str, str]:
        body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        footer = ""
        text_lines = [title, ""] + paragraphs
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            body += f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(label)}</a></p>'
            footer = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            text_lines += ["", url]
        text_lines += ["", "---", self.from_name]
        html_body = _LAYOUT.format(
            title=html.escape(title),
            body=body,
            brand=html.escape(self.from_name),
            footer=footer,
        )
        return html_body, "\n".join(text_lines) + "\n"

    def send_email_verification(
        self, to_email: str, display_name: str, token: str
    ) -> DispatchResult:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._compose(
            "Verify your email",
            [
                f"Hi {display_name},",
                "Thanks for signing up! Please verify your email address.",
                f"This link will expire in {self.verification_ttl_hours} hours.",
            ],
            link=("Verify Email Address", verify_url),
        )
        return self.send(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_reset(
        self, to_email: str, display_name: str, token: str
    ) -> DispatchResult:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._compose(
            "Reset your password",
            [
                f"Hi {display_name},",
                "We received a request to reset your password.",
                f"This link will expire in {self.reset_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", reset_url),
        )
        return self.send(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_password_changed(self, to_email: str, display_name: str) -> DispatchResult:
        html_body, text_body = self._compose(
            "Your password was changed",
            [
                f"Hi {display_name},",
                "The password on your account was just changed.",
                "If you didn't make this change, reset your password and contact support immediately.",
            ],
        )
        return self.send(to_email, "Your password was changed", html_body, text_body)
