from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple, Union

from agriqual.config import Settings
from agriqual.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0


class CounterStore(Protocol):
    async def increment(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]:
        """Count one hit in the fixed window for ``key``; return ``(count, window_start)``."""


class MemoryCounterStore:
    """Process-local counters.

    Each replica keeps its own windows, so N replicas admit up to
    N x limit requests per key. Use ``RedisCache`` when running more than one.
    """

    MAX_KEYS = 10_000

    def __init__(self) -> None:
        # key -> (count, window start, window seconds)
        self._windows: Dict[str, Tuple[int, float, int]] = {}
        self._lock = threading.Lock()

    async def increment(
        self, key: str, window_seconds: int, now: float
    ) -> Tuple[int, float]:
        with self._lock:
            count, start, _ = self._windows.get(key, (0, now, window_seconds))
            if now - start > window_seconds:
                count, start = 0, now
            count += 1
            self._windows[key] = (count, start, window_seconds)
            self._prune(now)
            return count, start

    def _prune(self, now: float) -> None:
        if len(self._windows) < self.MAX_KEYS:
            return
        # each key expires on its own window, not the caller's
        stale = [
            key
            for key, (_, start, window) in self._windows.items()
            if now - start > window
        ]
        for key in stale:
            self._windows.pop(key, None)


class RateLimiter:
    """Fixed-window request limiter over a pluggable counter store."""

    def __init__(
        self,
        counters: CounterStore,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
    ) -> None:
        self.counters = counters
        self.policies = policies or {}

    def policy(self, name: str) -> RateLimitPolicy:
        try:
            return self.policies[name]
        except KeyError:
            raise KeyError(f"unknown rate limit policy: {name}") from None

    async def hit(
        self,
        policy: Union[RateLimitPolicy, str],
        key: str,
        now: Optional[float] = None,
    ) -> RateLimitDecision:
        """Count a request for ``key`` and decide whether it may proceed.

        Windows reset once more than ``window_seconds`` have passed since the
        first hit; bursts straddling a window boundary are tolerated.
        """

        if isinstance(policy, str):
            policy = self.policy(policy)
        if policy.limit <= 0:
            # a non-positive limit disables the policy
            return RateLimitDecision(allowed=True, remaining=0)
        if policy.window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                policy=policy.name,
                window_seconds=policy.window_seconds,
            )
            policy = RateLimitPolicy(policy.name, policy.limit, 60)
        now = time.time() if now is None else now
        count, window_start = await self.counters.increment(
            f"{policy.name}:{key}", policy.window_seconds, now
        )
        if count > policy.limit:
            elapsed = now - window_start
            retry_after = max(1, math.ceil(policy.window_seconds - elapsed))
            logger.info(
                "rate_limit_exceeded",
                policy=policy.name,
                count=count,
                retry_after_seconds=retry_after,
            )
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)
        return RateLimitDecision(allowed=True, remaining=policy.limit - count)


LOGIN = "login"
REGISTER_OTP = "register_otp"
VERIFY_OTP = "verify_otp"
PASSWORD_CHANGE = "password_change"
HELP_TICKET = "help_ticket"
DIAGNOSE = "diagnose"


def policies_from_settings(settings: Settings) -> Dict[str, RateLimitPolicy]:
    pairs = {
        LOGIN: (settings.login_rate_limit, settings.login_rate_window_seconds),
        REGISTER_OTP: (settings.register_rate_limit, settings.register_rate_window_seconds),
        VERIFY_OTP: (settings.verify_otp_rate_limit, settings.verify_otp_rate_window_seconds),
        PASSWORD_CHANGE: (
            settings.password_change_rate_limit,
            settings.password_change_rate_window_seconds,
        ),
        HELP_TICKET: (settings.help_ticket_max_per_window, settings.help_ticket_window_seconds),
        DIAGNOSE: (settings.diagnose_rate_limit, settings.diagnose_rate_window_seconds),
    }
    return {
        name: RateLimitPolicy(name=name, limit=limit, window_seconds=window)
        for name, (limit, window) in pairs.items()
    }


__all__ = [
    "CounterStore",
    "MemoryCounterStore",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "policies_from_settings",
]
