from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from clinauth.logging import get_logger

logger = get_logger(__name__)

PURPOSE_SUBJECTS = {
    "login": "Your sign-in verification code",
    "password_reset": "Your password reset code",
    "email_change": "Confirm your new email address",
    "security": "Your security verification code",
}


class OtpNotifier(Protocol):
    def send_otp(
        self, to_email: str, code: str, *, username: str, purpose: str, expires_in: int
    ) -> bool: ...


def mask_email(email: str) -> str:
    """Mask an address as shown to the user: first three characters kept."""
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:3]}***@{domain}"


class EmailOtpNotifier:
    """Delivers one-time codes over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to a log line when SMTP is not configured (dev mode); the
      code itself is never logged
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
        from_name: str = "Clinical Records",
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
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
                to=mask_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def send_otp(
        self, to_email: str, code: str, *, username: str, purpose: str, expires_in: int
    ) -> bool:
        subject = PURPOSE_SUBJECTS.get(purpose, PURPOSE_SUBJECTS["security"])
        minutes = max(1, expires_in // 60)

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <p>Hello {username},</p>
    <p>Your verification code is:</p>
    <p style="font-size: 28px; font-weight: 600; letter-spacing: 6px;">{code}</p>
    <p>The code expires in {minutes} minutes and can be used once.</p>
    <p style="color: #52606d; font-size: 13px;">If you did not try to sign in, contact your administrator.</p>
</body>
</html>
"""

        text_body = f"""Hello {username},

Your verification code is: {code}

The code expires in {minutes} minutes and can be used once.

If you did not try to sign in, contact your administrator.
"""

        return self._send_email(to_email, subject, html_body, text_body)
