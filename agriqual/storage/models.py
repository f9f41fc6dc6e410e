from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    role: str = "farmer"
    credential_hash: Optional[str] = None
    # Plaintext carried over from the old backend; cleared on first verify
    legacy_password: Optional[str] = None
    email_verified: bool = False
    failed_login_count: int = 0
    lock_until: Optional[datetime] = None
    token_version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_credential(self) -> bool:
        return bool(self.credential_hash or self.legacy_password)


@dataclass
class CredentialHistoryEntry:
    account_id: str
    credential_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LockoutState:
    account_id: str
    purpose: str
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None


@dataclass
class PendingRegistration:
    email: str
    name: str
    credential_hash: str
    otp_hash: str
    otp_expiry: datetime
    phone: Optional[str] = None
    role: str = "farmer"
    failed_attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    email: str
    success: bool
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenClaims:
    subject_id: str
    role: str
    issued_at: datetime
    expires_at: datetime
    token_version: int = 1
