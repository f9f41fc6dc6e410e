from __future__ import annotations

import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from agriqual.config import Settings
from agriqual.logging import get_logger
from agriqual.service.errors import DeliveryError

logger = get_logger(__name__)

# one-time codes and other numeric secrets in dev-mode previews
_DIGIT_RUN_RE = re.compile(r"\d{4,}")


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Registration codes and password-change notices
    - Fallback to logging when SMTP is not configured (dev mode)

    ``send`` is blocking; async callers run it in a worker thread.
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
        from_name: str = "AgriQual",
        otp_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.otp_ttl_minutes = otp_ttl_minutes

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
            otp_ttl_minutes=settings.otp_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(
        self, to: str, subject: str, body: str, html_body: Optional[str] = None
    ) -> None:
        """Deliver one message; raises ``DeliveryError`` on any SMTP failure."""

        recipient = self._redact_email(to)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=_DIGIT_RUN_RE.sub("***", body[:200]),
            )
            return

        if html_body:
            msg = MIMEMultipart("alternative")
            msg.attach(MIMEText(body, "plain"))
            msg.attach(MIMEText(html_body, "html"))
        else:
            msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            recipient=recipient,
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            raise DeliveryError("SMTP authentication failed") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", recipient=recipient)
            raise DeliveryError("recipient refused") from exc
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError(str(exc)) from exc
        except (ssl.SSLError, OSError) as exc:
            # OSError covers refused connections and timeouts
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError(str(exc)) from exc

        logger.info("email_sent", recipient=recipient, subject=subject)

    def send_otp(self, to_email: str, code: str) -> None:
        subject = "Your AgriQual verification code"
        text_body = (
            f"Your AgriQual verification code is: {code}\n"
            "\n"
            f"It will expire in {self.otp_ttl_minutes} minutes.\n"
            "\n"
            "If you did not request this code, you can ignore this email."
        )
        html_body = (
            f"<p>Your verification code is: <strong>{code}</strong></p>"
            f"<p>It will expire in {self.otp_ttl_minutes} minutes.</p>"
        )
        self.send(to_email, subject, text_body, html_body)

    def send_password_changed(self, to_email: str) -> None:
        subject = "Your AgriQual password was changed"
        text_body = "\n".join(
            [
                "Hello,",
                "",
                "This is a confirmation that the password for your AgriQual account was changed.",
                "",
                "If you made this change, no further action is needed.",
                "If you did NOT change your password, please reset it immediately and contact support.",
                "",
                "This email was sent automatically. Please do not reply.",
            ]
        )
        self.send(to_email, subject, text_body)


__all__ = ["EmailService"]
