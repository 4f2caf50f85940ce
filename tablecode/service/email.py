from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tablecode.config import Settings
from tablecode.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Delivers forgot-PIN verification codes over SMTP.

    When SMTP is not configured (dev mode) the send is logged without its
    body and reported as delivered.
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
        from_name: str = "TableCode",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

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
            timeout=settings.collaborator_timeout_seconds,
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; True when the SMTP server accepted it."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=recipient)
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error("email_ssl_error", recipient=recipient, host=self.smtp_host, error=str(e))
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def send_otp(self, email: str, otp: str) -> bool:
        """Send the forgot-PIN verification code."""
        subject = "Your TableCode verification code"
        text_body = (
            f"Your verification code is {otp}.\n\n"
            "It expires in 10 minutes. If you did not ask to reset your PIN, "
            "ignore this email; your PIN has not changed."
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <p>Your verification code is</p>
  <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{otp}</p>
  <p>It expires in 10 minutes. If you did not ask to reset your PIN, ignore this
  email; your PIN has not changed.</p>
</body>
</html>
"""
        return self._send_email(email, subject, html_body, text_body)
