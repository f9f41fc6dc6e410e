"""Tests for the SMTP email service."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from agriqual.config import Settings
from agriqual.service.email import EmailService
from agriqual.service.errors import DeliveryError


@pytest.fixture
def configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer@example.com",
        smtp_password="app-password",
        from_email="no-reply@agriqual.example",
    )


class TestDevMode:
    def test_unconfigured_logs_instead_of_sending(self):
        service = EmailService()
        assert service.is_configured is False

        with patch("agriqual.service.email.smtplib.SMTP") as smtp, patch(
            "agriqual.service.email.logger"
        ) as mock_logger:
            service.send("farmer@example.com", "Hi", "Body")

        smtp.assert_not_called()
        assert mock_logger.info.call_args[0][0] == "email_dev_mode"
        assert mock_logger.info.call_args[1]["recipient"] == "fa***@example.com"

    def test_dev_mode_preview_hides_code(self):
        service = EmailService()
        with patch("agriqual.service.email.logger") as mock_logger:
            service.send_otp("farmer@example.com", "482913")

        preview = mock_logger.info.call_args[1]["body_preview"]
        assert "482913" not in preview
        assert "Your AgriQual verification code is: ***" in preview

    def test_from_settings(self):
        settings = Settings(
            jwt_secret="x",
            test_mode=True,
            smtp_host="smtp.example.com",
            smtp_user="mailer@example.com",
            otp_ttl_minutes=7,
        )
        service = EmailService.from_settings(settings)

        assert service.is_configured is True
        # sender falls back to the SMTP user
        assert service.from_email == "mailer@example.com"
        assert service.otp_ttl_minutes == 7


class TestDelivery:
    def test_starttls_login_and_send(self, configured):
        with patch("agriqual.service.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            configured.send("farmer@example.com", "Subject", "Body")

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer@example.com", "app-password")
        sender, recipient, _ = server.sendmail.call_args[0]
        assert sender == "no-reply@agriqual.example"
        assert recipient == "farmer@example.com"

    def test_implicit_ssl(self):
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_port=465,
            smtp_use_tls=False,
            from_email="no-reply@agriqual.example",
        )
        with patch("agriqual.service.email.smtplib.SMTP_SSL") as smtp_ssl:
            service.send("farmer@example.com", "Subject", "Body")

        smtp_ssl.return_value.__enter__.return_value.sendmail.assert_called_once()

    @pytest.mark.parametrize(
        "exc",
        [
            smtplib.SMTPAuthenticationError(535, b"bad credentials"),
            smtplib.SMTPRecipientsRefused({"farmer@example.com": (550, b"no")}),
            smtplib.SMTPServerDisconnected("gone"),
            ConnectionRefusedError("refused"),
            TimeoutError("timed out"),
        ],
    )
    def test_failures_raise_delivery_error(self, configured, exc):
        with patch("agriqual.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = exc
            with pytest.raises(DeliveryError):
                configured.send("farmer@example.com", "Subject", "Body")

    def test_connect_failure_raises_delivery_error(self, configured):
        with patch(
            "agriqual.service.email.smtplib.SMTP", side_effect=OSError("unreachable")
        ):
            with pytest.raises(DeliveryError, match="unreachable"):
                configured.send("farmer@example.com", "Subject", "Body")


class TestTemplates:
    def test_otp_message(self, configured):
        configured.send = MagicMock()
        configured.send_otp("farmer@example.com", "482913")

        to, subject, body, html = configured.send.call_args[0]
        assert to == "farmer@example.com"
        assert subject == "Your AgriQual verification code"
        assert "Your AgriQual verification code is: 482913" in body
        assert "It will expire in 10 minutes." in body
        assert "<strong>482913</strong>" in html

    def test_password_changed_notice(self, configured):
        configured.send = MagicMock()
        configured.send_password_changed("farmer@example.com")

        _, subject, body = configured.send.call_args[0]
        assert subject == "Your AgriQual password was changed"
        assert "did NOT change your password" in body
