from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional

from agriqual.config import Settings
from agriqual.logging import email_digest, get_logger
from agriqual.service.credentials import hash_secret, matches
from agriqual.service.errors import OtpError
from agriqual.storage.models import PendingRegistration, utcnow

logger = get_logger(__name__)

GENERIC_OTP_MESSAGE = "Invalid or expired verification code"


class OtpService:
    """Issue and check one-time registration codes held on the pending record."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _generate(self) -> str:
        digits = self.settings.otp_digits
        return str(secrets.randbelow(10**digits)).zfill(digits)

    def issue(
        self,
        email: str,
        *,
        name: str,
        credential_hash: str,
        phone: Optional[str] = None,
        role: str = "farmer",
        now: Optional[datetime] = None,
    ) -> str:
        """Stage the profile and credential for ``email`` and return a fresh code.

        Any earlier pending record for the same email is replaced and its
        attempt counter reset.
        """

        now = now or utcnow()
        code = self._generate()
        self.store.upsert_pending_registration(
            PendingRegistration(
                email=email,
                name=name,
                phone=phone,
                role=role,
                credential_hash=credential_hash,
                otp_hash=hash_secret(code),
                otp_expiry=now + timedelta(minutes=self.settings.otp_ttl_minutes),
                created_at=now,
            )
        )
        logger.info("otp_issued", email_hash=email_digest(email))
        return code

    def verify(
        self, email: str, code: str, *, now: Optional[datetime] = None
    ) -> PendingRegistration:
        """Return the pending record if ``code`` matches; raise ``OtpError`` otherwise.

        The record is left in place on success so the caller can promote it
        with ``complete_registration``, which consumes it atomically.
        """

        now = now or utcnow()
        pending = self.store.get_pending_registration(email)
        if not pending:
            raise OtpError(OtpError.NO_PENDING_RECORD, GENERIC_OTP_MESSAGE)
        if now >= pending.otp_expiry:
            # a code re-issued meanwhile carries another hash and survives
            self.store.delete_pending_registration(email, otp_hash=pending.otp_hash)
            logger.info("otp_expired", email_hash=email_digest(email))
            raise OtpError(OtpError.EXPIRED, "Verification code has expired")
        if not matches(pending.otp_hash, (code or "").strip()):
            attempts = self.store.record_pending_failure(
                email, self.settings.otp_max_attempts
            )
            logger.warning(
                "otp_mismatch", email_hash=email_digest(email), failed_attempts=attempts
            )
            if attempts >= self.settings.otp_max_attempts:
                raise OtpError(
                    OtpError.TOO_MANY_ATTEMPTS,
                    "Too many incorrect codes. Please request a new verification code.",
                )
            raise OtpError(OtpError.MISMATCH, "Invalid verification code")
        return pending


__all__ = ["OtpService", "GENERIC_OTP_MESSAGE"]
