from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from eventauth.logging import get_logger

logger = get_logger(__name__)

LOGIN_CODE = "login_code"
PASSWORD_RESET = "password_reset"


class DeliveryError(Exception):
    """Raised by a delivery collaborator when a message could not be sent."""


@dataclass(frozen=True)
class DeliveryPayload:
    kind: str
    secret: str
    ttl_seconds: int
    recipient_name: Optional[str] = None


class Delivery(Protocol):
    def deliver(self, account_key: str, payload: DeliveryPayload) -> None: ...


def describe_ttl(ttl_seconds: int) -> str:
    if ttl_seconds < 120:
        return f"{ttl_seconds} seconds"
    minutes = ttl_seconds // 60
    return f"{minutes} minutes"


class EmailService:
    """SMTP delivery of login codes and password reset links.

    Unlike a best-effort notifier, every failure is raised as
    :class:`DeliveryError` so the caller can tell the user the code never
    left. With ``log_only`` set (tests, local runs) messages are logged
    without their secret instead of sent.
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
        from_name: str = "Event Signup",
        base_url: Optional[str] = None,
        log_only: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"
        self.log_only = log_only

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def deliver(self, account_key: str, payload: DeliveryPayload) -> None:
        if "@" not in (account_key or ""):
            raise DeliveryError("Invalid recipient email address")
        if payload.kind == LOGIN_CODE:
            self.send_login_code(
                account_key, payload.secret, payload.ttl_seconds, payload.recipient_name
            )
        elif payload.kind == PASSWORD_RESET:
            self.send_password_reset(account_key, payload.secret, payload.ttl_seconds)
        else:
            raise DeliveryError(f"Unsupported message kind: {payload.kind}")

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except BaseException:
            server.close()
            raise
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        """Send an email via SMTP, raising DeliveryError on any failure."""
        if self.log_only:
            logger.info(
                "email_log_only",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return
        if not self.is_configured:
            logger.error("email_not_configured", to=self._redact_email(to_email))
            raise DeliveryError(
                "Email delivery is not configured; set SMTP_HOST and EMAIL_FROM_ADDRESS"
            )

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        try:
            with self._open() as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            raise DeliveryError(
                "Email authentication failed; check SMTP_USER and SMTP_PASSWORD"
            ) from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=self._redact_email(to_email))
            raise DeliveryError("Recipient address was refused") from e
        except (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected, OSError) as e:
            # OSError covers socket timeouts, refused connections and ssl.SSLError
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError("Could not connect to the email server") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError(f"Failed to send email: {type(e).__name__}") from e

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)

    def check_connection(self) -> bool:
        """Open and authenticate an SMTP session without sending anything."""
        if not self.is_configured:
            return False
        try:
            with self._open() as server:
                server.noop()
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_config_check_failed",
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        return True

    def send_login_code(
        self,
        to_email: str,
        code: str,
        ttl_seconds: int,
        recipient_name: Optional[str] = None,
    ) -> None:
        """Send the one-time login code."""
        name = recipient_name or "there"
        window = describe_ttl(ttl_seconds)
        year = datetime.now().year
        subject = "Your login verification code"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #4a5568; }}
        .code {{ font-family: 'Courier New', monospace; font-size: 36px; letter-spacing: 8px; color: #667eea; }}
        .warning {{ background: #fff5e6; border-left: 4px solid #ffa726; padding: 12px 16px; }}
        .footer {{ color: #718096; font-size: 12px; }}
    </style>
</head>
<body>
    <h2>Login verification</h2>
    <p>Hello <strong>{name}</strong>,</p>
    <p>Use the code below to finish signing in.</p>
    <p class="code">{code}</p>
    <p class="warning">This code expires in <strong>{window}</strong>.</p>
    <p>If you didn't try to sign in, you can ignore this email.</p>
    <p class="footer">This is an automated message. &copy; {year}</p>
</body>
</html>
"""

        text_body = f"""Hello {name},

Use the following code to finish signing in:

{code}

This code expires in {window}.

If you didn't try to sign in, you can ignore this email.
"""
        self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str, ttl_seconds: int) -> None:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/reset-password?token={token}"
        window = describe_ttl(ttl_seconds)
        subject = "Reset your password"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #4a5568; }}
        .button {{ display: inline-block; padding: 12px 24px; background: #667eea; color: #ffffff; text-decoration: none; border-radius: 6px; }}
    </style>
</head>
<body>
    <h2>Reset your password</h2>
    <p>We received a request to reset the password for this account.</p>
    <p><a class="button" href="{reset_url}">Choose a new password</a></p>
    <p>The link expires in {window} and can be used once.</p>
    <p>If you didn't request a reset, you can ignore this email.</p>
</body>
</html>
"""

        text_body = f"""We received a request to reset the password for this account.

Choose a new password here: {reset_url}

The link expires in {window} and can be used once.
If you didn't request a reset, you can ignore this email.
"""
        self._send_email(to_email, subject, html_body, text_body)
