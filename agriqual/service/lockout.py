from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from agriqual.logging import get_logger
from agriqual.storage.models import LockoutState, utcnow

logger = get_logger(__name__)

LOGIN = "login"
PASSWORD_CHANGE = "password_change"


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    retry_after_seconds: int = 0
    failed_attempts: int = 0
    # set only by the failure that engaged the lock
    triggered: bool = False


def check(state: Optional[LockoutState], now: datetime) -> LockStatus:
    """Report whether ``state`` is locked at ``now``.

    An expired ``lock_until`` counts as open; nothing is written until the
    next failure or success overwrites it.
    """

    if state is None:
        return LockStatus(locked=False)
    if state.lock_until is not None and state.lock_until > now:
        remaining = (state.lock_until - now).total_seconds()
        return LockStatus(
            locked=True,
            retry_after_seconds=max(1, math.ceil(remaining)),
            failed_attempts=state.failed_attempts,
        )
    return LockStatus(locked=False, failed_attempts=state.failed_attempts)


def record_failure(
    state: LockoutState, now: datetime, *, max_attempts: int, duration: timedelta
) -> LockStatus:
    """Count a failure on ``state`` in place, locking once ``max_attempts`` is reached.

    While already locked this is a no-op: the lock is neither extended nor
    double counted.
    """

    current = check(state, now)
    if current.locked:
        return current
    if state.lock_until is not None:
        # expired lock: start a fresh cycle
        state.lock_until = None
        state.failed_attempts = 0
    state.failed_attempts += 1
    state.last_attempt_at = now
    if state.failed_attempts >= max_attempts:
        state.lock_until = now + duration
        state.failed_attempts = 0
        return LockStatus(
            locked=True,
            retry_after_seconds=max(1, math.ceil(duration.total_seconds())),
            failed_attempts=0,
            triggered=True,
        )
    return LockStatus(locked=False, failed_attempts=state.failed_attempts)


def record_success(state: LockoutState, now: Optional[datetime] = None) -> LockStatus:
    state.failed_attempts = 0
    state.lock_until = None
    state.last_attempt_at = now or utcnow()
    return LockStatus(locked=False)


class LockoutTracker:
    """Apply the lockout state machine for one purpose through the shared store."""

    def __init__(
        self, store, purpose: str, *, max_attempts: int, duration: timedelta
    ) -> None:
        self.store = store
        self.purpose = purpose
        self.max_attempts = max_attempts
        self.duration = duration

    def check(self, account_id: str, now: Optional[datetime] = None) -> LockStatus:
        return check(self.store.get_lockout(account_id, self.purpose), now or utcnow())

    def record_failure(self, account_id: str, now: Optional[datetime] = None) -> LockStatus:
        now = now or utcnow()
        status = self.store.update_lockout(
            account_id,
            self.purpose,
            lambda state: record_failure(
                state, now, max_attempts=self.max_attempts, duration=self.duration
            ),
        )
        if status.triggered:
            logger.warning(
                "account_locked",
                account_id=account_id,
                purpose=self.purpose,
                retry_after_seconds=status.retry_after_seconds,
            )
        return status

    def record_success(self, account_id: str, now: Optional[datetime] = None) -> LockStatus:
        return self.store.update_lockout(
            account_id, self.purpose, lambda state: record_success(state, now)
        )


__all__ = [
    "LOGIN",
    "PASSWORD_CHANGE",
    "LockStatus",
    "LockoutTracker",
    "check",
    "record_failure",
    "record_success",
]
