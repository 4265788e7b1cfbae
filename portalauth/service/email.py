from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

import httpx

from portalauth.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 32px; font-weight: 700; letter-spacing: 8px; background: #f3f4f6; padding: 16px 24px; border-radius: 8px; display: inline-block; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Transactional email for verification codes and password resets.

    Delivery order:
    - Resend HTTP API when an API key is configured
    - SMTP with TLS/SSL when a host is configured
    - Logging only (development)

    Every send reports success as a bool; failures are logged, never raised.
    """

    def __init__(
        self,
        *,
        resend_api_key: Optional[str] = None,
        resend_api_url: str = "https://api.resend.com/emails",
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "JobSearch",
        app_name: str = "JobSearch",
        base_url: Optional[str] = None,
        support_email: Optional[str] = None,
        otp_ttl_minutes: int = 5,
        reset_ttl_minutes: int = 15,
    ) -> None:
        self.resend_api_key = resend_api_key
        self.resend_api_url = resend_api_url
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.app_name = app_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.support_email = support_email
        self.otp_ttl_minutes = otp_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.from_email and (self.resend_api_key or self.smtp_host))

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True
        if self.resend_api_key:
            return self._send_via_resend(to_email, subject, html_body, text_body)
        return self._send_via_smtp(to_email, subject, html_body, text_body)

    def _send_via_resend(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> bool:
        payload = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        if text_body:
            payload["text"] = text_body
        try:
            response = httpx.post(
                self.resend_api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.resend_api_key}"},
                timeout=30.0,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_provider_rejected",
                to=self._redact_email(to_email),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "email_provider_unreachable",
                to=self._redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject, via="resend")
        return True

    def _send_via_smtp(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> bool:
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
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject, via="smtp")
        return True

    def _footer_html(self) -> str:
        support = (
            f"<p>Questions? Contact {html.escape(self.support_email)}</p>"
            if self.support_email
            else ""
        )
        return f'<div class="footer"><p>{html.escape(self.app_name)}</p>{support}</div>'

    def send_verification_code(self, to_email: str, name: str, code: str) -> bool:
        """Send the 6-digit email verification code."""
        verify_url = f"{self.base_url}/verify-email?email={quote(to_email)}"
        subject = f"Verify your {self.app_name} email"
        html_body = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Welcome, {html.escape(name)}!</h1>
        <p>Use this code to verify your email address:</p>
        <p class="code">{html.escape(code)}</p>
        <p>This code expires in {self.otp_ttl_minutes} minutes.</p>
        <p style="margin: 30px 0;">
            <a href="{html.escape(verify_url)}" class="button">Enter code</a>
        </p>
        <p>If you didn't create an account, you can ignore this email.</p>
        {self._footer_html()}
    </div>
</body>
</html>
"""
        text_body = f"""Welcome, {name}!

Your {self.app_name} verification code is: {code}

This code expires in {self.otp_ttl_minutes} minutes.

Enter it at: {verify_url}

If you didn't create an account, you can ignore this email.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send a password reset link."""
        reset_url = f"{self.base_url}/reset-password?token={quote(token)}"
        subject = f"Reset your {self.app_name} password"
        html_body = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>We received a request to reset your password. Click the button below to choose a new one:</p>
        <p style="margin: 30px 0;">
            <a href="{html.escape(reset_url)}" class="button">Reset Password</a>
        </p>
        <p>This link will expire in {self.reset_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        {self._footer_html()}
    </div>
</body>
</html>
"""
        text_body = f"""Reset your {self.app_name} password

Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    async def deliver_verification_code(self, to_email: str, name: str, code: str) -> bool:
        return await asyncio.to_thread(self.send_verification_code, to_email, name, code)

    async def deliver_password_reset(self, to_email: str, token: str) -> bool:
        return await asyncio.to_thread(self.send_password_reset, to_email, token)
