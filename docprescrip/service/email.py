from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from docprescrip.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional email for the auth flows.

    Sends the registration OTP and the replacement password issued by
    forgot-password. Without SMTP settings it logs the message instead
    (development mode) and reports success.
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
        from_name: str = "Doc Prescrip",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

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
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

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
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connection_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(self, to_email: str, code: str, first_name: Optional[str] = None) -> bool:
        greeting = f"Hello {first_name}," if first_name else "Hello,"
        subject = "Your Doc Prescrip verification code"
        text_body = (
            f"{greeting}\n\n"
            f"Your verification code is {code}. It expires in 10 minutes.\n\n"
            "If you did not request this code, you can ignore this email."
        )
        html_body = (
            f"<p>{escape(greeting)}</p>"
            f"<p>Your verification code is <strong>{escape(code)}</strong>. "
            "It expires in 10 minutes.</p>"
            "<p>If you did not request this code, you can ignore this email.</p>"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_new_password(self, to_email: str, name: str, password: str) -> bool:
        """Email a freshly generated password after a forgot-password request."""
        subject = "Your Doc Prescrip password has been reset"
        login_url = f"{self.base_url}/login"
        text_body = (
            f"Hello {name or 'Doctor'},\n\n"
            f"Your new password is: {password}\n\n"
            f"Sign in at {login_url} and change it from your profile.\n\n"
            "If you did not request a password reset, contact support immediately."
        )
        html_body = (
            f"<p>Hello {escape(name or 'Doctor')},</p>"
            f"<p>Your new password is: <code>{escape(password)}</code></p>"
            f'<p><a href="{escape(login_url)}">Sign in</a> and change it from your profile.</p>'
            "<p>If you did not request a password reset, contact support immediately.</p>"
        )
        return self._send_email(to_email, subject, html_body, text_body)
