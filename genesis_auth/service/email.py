from __future__ import annotations

import smtplib
import ssl
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from genesis_auth.config import Settings
from genesis_auth.logging import get_logger, mask_email

logger = get_logger(__name__)


_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        {action}
        <p>{note}</p>
        <div class="footer">
            <p>{product}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail over SMTP (STARTTLS or implicit SSL).

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests free of a mail server.
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
        from_name: str = "Genesis Auth",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
        retry_attempts: int = 1,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds

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
            verification_ttl_hours=settings.email_verification_ttl_hours,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            retry_attempts=settings.email_retry_attempts,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        *,
        title: str,
        intro: str,
        note: str,
        action_label: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> tuple[str, str]:
        action_html = ""
        fallback_html = ""
        text_lines = [title, "", intro, ""]
        if action_url:
            safe_url = escape(action_url, quote=True)
            action_html = (
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">'
                f"{escape(action_label or 'Open')}</a></p>"
            )
            fallback_html = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            text_lines += [action_url, ""]
        html_body = _HTML_TEMPLATE.format(
            title=escape(title),
            intro=escape(intro),
            action=action_html,
            note=escape(note),
            product=escape(self.from_name),
            fallback=fallback_html,
        )
        text_lines += [note, "", "---", self.from_name, ""]
        return html_body, "\n".join(text_lines)

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send via SMTP, retrying transient failures. Returns False when delivery failed."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        for attempt in range(1, self.retry_attempts + 1):
            try:
                self._deliver(to_email, subject, html_body, text_body)
            except smtplib.SMTPAuthenticationError as exc:
                # credentials will not fix themselves on retry
                logger.error(
                    "email_auth_failed",
                    to=mask_email(to_email),
                    host=self.smtp_host,
                    error_code=getattr(exc, "smtp_code", None),
                )
                return False
            except smtplib.SMTPRecipientsRefused as exc:
                logger.error(
                    "email_recipient_refused",
                    to=mask_email(to_email),
                    refused=len(getattr(exc, "recipients", {}) or {}),
                )
                return False
            except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
                logger.warning(
                    "email_send_attempt_failed",
                    to=mask_email(to_email),
                    host=self.smtp_host,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_backoff_seconds * attempt)
                continue
            logger.info("email_sent", to=mask_email(to_email), subject=subject, attempt=attempt)
            return True

        logger.error("email_send_failed", to=mask_email(to_email), attempts=self.retry_attempts)
        return False

    def send_verification_email(self, to_address: str, raw_token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={raw_token}"
        html_body, text_body = self._render(
            title="Verify your email",
            intro="Thanks for signing up! Please confirm your email address to finish setting up your account.",
            action_label="Verify Email",
            action_url=verify_url,
            note=f"This link will expire in {self.verification_ttl_hours} hours.",
        )
        return self._send_email(
            to_address, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset_email(self, to_address: str, raw_token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={raw_token}"
        html_body, text_body = self._render(
            title="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            action_label="Reset Password",
            action_url=reset_url,
            note=(
                f"This link will expire in {self.reset_ttl_minutes} minutes. "
                "If you didn't request this, you can safely ignore this email."
            ),
        )
        return self._send_email(
            to_address, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_password_changed_email(self, to_address: str) -> bool:
        html_body, text_body = self._render(
            title="Your password was changed",
            intro="This confirms that the password on your account was just changed and every other session was signed out.",
            note="If you did not make this change, reset your password immediately and contact support.",
        )
        return self._send_email(
            to_address, f"Your {self.from_name} password was changed", html_body, text_body
        )
