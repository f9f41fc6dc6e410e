from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional, Protocol, Tuple, TypeVar

from agriqual.config import Settings
from agriqual.logging import email_digest, get_logger
from agriqual.service import lockout
from agriqual.service.credentials import CredentialStore, hash_secret, matches
from agriqual.service.email import EmailService
from agriqual.service.errors import (
    AuthenticationError,
    ConflictError,
    LockedError,
    NoCredentialError,
    NotFoundError,
    OtpError,
    TokenError,
    ValidationError,
)
from agriqual.service.lockout import LockoutTracker
from agriqual.service.otp import GENERIC_OTP_MESSAGE, OtpService
from agriqual.service.policy import (
    validate_email,
    validate_name,
    validate_password,
    validate_role,
)
from agriqual.service.tokens import SessionTokenIssuer
from agriqual.storage.errors import ConstraintViolation
from agriqual.storage.models import (
    Account,
    CredentialHistoryEntry,
    LockoutState,
    LoginAttempt,
    PendingRegistration,
    TokenClaims,
)

T = TypeVar("T")

logger = get_logger(__name__)

INVALID_LOGIN_MESSAGE = "Invalid email or password"
LOGIN_LOCKED_MESSAGE = "Too many failed login attempts. Your account is temporarily locked."
PASSWORD_CHANGE_LOCKED_MESSAGE = "Too many incorrect password attempts. Please try again later."
REGISTRATION_SENT_MESSAGE = "Verification code has been sent to your email"
PASSWORD_CHANGED_MESSAGE = "Password changed successfully"

# login failures without a stored credential still pay one argon2 verify
_DUMMY_CREDENTIAL_HASH = hash_secret("agriqual-login-timing-equalizer")


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        name: str,
        *,
        phone: Optional[str] = None,
        role: str = "farmer",
        credential_hash: Optional[str] = None,
        legacy_password: Optional[str] = None,
        email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]: ...

    def set_credential(
        self,
        account_id: str,
        credential_hash: str,
        *,
        retire_current: bool = False,
        retention: int = 10,
    ) -> Account: ...

    def list_credential_history(
        self, account_id: str, limit: int = 5
    ) -> List[CredentialHistoryEntry]: ...

    def get_lockout(self, account_id: str, purpose: str) -> Optional[LockoutState]: ...

    def update_lockout(
        self, account_id: str, purpose: str, mutate: Callable[[LockoutState], T]
    ) -> T: ...

    def upsert_pending_registration(self, pending: PendingRegistration) -> None: ...

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]: ...

    def delete_pending_registration(
        self, email: str, otp_hash: Optional[str] = None
    ) -> bool: ...

    def record_pending_failure(self, email: str, max_attempts: int) -> int: ...

    def complete_registration(self, email: str, otp_hash: str) -> Optional[Account]: ...

    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...


@dataclass
class RegistrationResult:
    message: str
    # only populated when EXPOSE_DEBUG_OTP is enabled
    debug_otp: Optional[str] = None


class AccountSecurityService:
    """Registration, login and password change over the shared account store."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email or EmailService.from_settings(settings)
        self.credentials = CredentialStore(store, settings)
        self.otp = OtpService(store, settings)
        self.tokens = SessionTokenIssuer(settings)
        self.login_lockout = LockoutTracker(
            store,
            lockout.LOGIN,
            max_attempts=settings.login_max_failed_attempts,
            duration=timedelta(minutes=settings.login_lockout_minutes),
        )
        self.password_lockout = LockoutTracker(
            store,
            lockout.PASSWORD_CHANGE,
            max_attempts=settings.password_change_max_failed_attempts,
            duration=timedelta(minutes=settings.password_change_lockout_minutes),
        )
        self.logger = logger

    async def _notify(self, event: str, send: Callable[..., None], *args) -> None:
        """Run a blocking email send off the event loop; failures are only logged."""

        try:
            await asyncio.to_thread(send, *args)
        except Exception as exc:
            self.logger.warning(
                "notification_failed",
                notification=event,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def register(
        self,
        name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        phone: Optional[str] = None,
        role: Optional[str] = None,
    ) -> RegistrationResult:
        """Stage a registration and email a verification code.

        The response is the same whether or not an unverified registration
        already existed for the address.
        """

        name = validate_name(name)
        email = validate_email(email)
        validate_password(password, email)
        role = validate_role(role)

        existing = self.store.get_account_by_email(email)
        if existing and existing.email_verified:
            raise ConflictError("An account with this email already exists")

        code = self.otp.issue(
            email,
            name=name,
            phone=(phone or "").strip() or None,
            role=role,
            credential_hash=self.credentials.hash_secret(password),
        )
        await self._notify("registration_otp", self.email.send_otp, email, code)
        self.logger.info("registration_staged", email_hash=email_digest(email), role=role)
        return RegistrationResult(
            message=REGISTRATION_SENT_MESSAGE,
            debug_otp=code if self.settings.expose_debug_otp else None,
        )

    async def verify_registration(
        self, email: Optional[str], otp: Optional[str]
    ) -> Tuple[str, Account]:
        email = validate_email(email)
        code = (otp or "").strip()
        if len(code) < 4:
            raise ValidationError("OTP code is required")

        pending = self.otp.verify(email, code)
        try:
            account = self.store.complete_registration(email, pending.otp_hash)
        except ConstraintViolation:
            raise ConflictError("An account with this email already exists") from None
        if account is None:
            # consumed or re-issued by a concurrent request
            raise OtpError(OtpError.NO_PENDING_RECORD, GENERIC_OTP_MESSAGE)

        token = self.tokens.issue(account)
        self.logger.info("registration_verified", account_id=account.id, role=account.role)
        return token, account

    def _audit_login(
        self,
        email: str,
        *,
        success: bool,
        reason: Optional[str],
        account: Optional[Account],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        self.store.record_login_attempt(
            LoginAttempt(
                email=email,
                success=success,
                account_id=account.id if account else None,
                ip_address=ip_address,
                user_agent=user_agent,
                reason=reason,
            )
        )
        log = self.logger.info if success else self.logger.warning
        log(
            "login_succeeded" if success else "login_failed",
            email_hash=email_digest(email),
            account_id=account.id if account else None,
            reason=reason,
            ip=ip_address,
        )

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[str, Account]:
        email = validate_email(email)
        if not password:
            raise ValidationError("Password is required")

        def audit(success: bool, reason: Optional[str], account: Optional[Account]) -> None:
            self._audit_login(
                email,
                success=success,
                reason=reason,
                account=account,
                ip_address=ip_address,
                user_agent=user_agent,
            )

        account = self.store.get_account_by_email(email)
        if not account:
            matches(_DUMMY_CREDENTIAL_HASH, password)
            audit(False, "unknown_account", None)
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)

        status = self.login_lockout.check(account.id)
        if status.locked:
            audit(False, "locked", account)
            raise LockedError(LOGIN_LOCKED_MESSAGE, status.retry_after_seconds)

        try:
            verified = self.credentials.verify(account, password)
        except NoCredentialError:
            matches(_DUMMY_CREDENTIAL_HASH, password)
            audit(False, "no_credential", account)
            raise AuthenticationError(INVALID_LOGIN_MESSAGE) from None

        if not verified:
            status = self.login_lockout.record_failure(account.id)
            audit(False, "bad_password", account)
            if status.locked and not status.triggered:
                # a concurrent failure engaged the lock first
                raise LockedError(LOGIN_LOCKED_MESSAGE, status.retry_after_seconds)
            raise AuthenticationError(INVALID_LOGIN_MESSAGE)

        self.login_lockout.record_success(account.id)
        token = self.tokens.issue(account)
        audit(True, None, account)
        return token, account

    async def change_password(
        self, claims: TokenClaims, old_password: Optional[str], new_password: Optional[str]
    ) -> str:
        old_password = old_password or ""
        new_password = new_password or ""
        if not old_password or not new_password:
            raise ValidationError("Old password and new password are required")

        account = self.store.get_account(claims.subject_id)
        if not account:
            raise NotFoundError("User not found")

        status = self.password_lockout.check(account.id)
        if status.locked:
            raise LockedError(PASSWORD_CHANGE_LOCKED_MESSAGE, status.retry_after_seconds)

        if old_password == new_password:
            raise ValidationError("New password must be different from old password")
        validate_password(new_password, account.email, label="New password")

        if not self.credentials.verify(account, old_password):
            self.password_lockout.record_failure(account.id)
            self.logger.warning("password_change_rejected", account_id=account.id, reason="old_mismatch")
            raise ValidationError("Old password is incorrect")
        self.password_lockout.record_success(account.id)

        if matches(account.credential_hash, new_password):
            raise ValidationError("New password must be different from your current password")
        if self.credentials.was_recently_used(account, new_password):
            raise ValidationError("New password cannot reuse one of your recent passwords")

        self.credentials.rotate(account, new_password)
        self.logger.info("password_changed", account_id=account.id)
        await self._notify("password_changed", self.email.send_password_changed, account.email)
        return PASSWORD_CHANGED_MESSAGE

    async def authenticate(self, authorization: Optional[str]) -> Tuple[TokenClaims, Account]:
        """Resolve an ``Authorization: Bearer`` header to claims and the live account.

        Tokens minted before the account's last password change carry a stale
        version and are rejected.
        """

        scheme, _, token = (authorization or "").strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise TokenError(TokenError.MALFORMED)
        claims = self.tokens.parse(token.strip())
        account = self.store.get_account(claims.subject_id)
        if not account:
            raise NotFoundError("User not found")
        if claims.token_version != account.token_version:
            self.logger.info(
                "token_version_stale",
                account_id=account.id,
                token_version=claims.token_version,
                current_version=account.token_version,
            )
            raise TokenError(TokenError.INVALID)
        return claims, account


__all__ = [
    "AccountSecurityService",
    "AccountStore",
    "RegistrationResult",
    "INVALID_LOGIN_MESSAGE",
    "LOGIN_LOCKED_MESSAGE",
    "PASSWORD_CHANGE_LOCKED_MESSAGE",
]
