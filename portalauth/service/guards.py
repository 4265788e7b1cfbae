from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from portalauth.service.errors import minutes_until


@dataclass(frozen=True)
class AttemptPolicy:
    """Threshold and lockout shared by the sign-in and verification-code guards.

    Counters live in the credential store and are incremented atomically
    there; the lock is an absolute unlock timestamp so checking it is one
    comparison.
    """

    max_attempts: int
    lockout: timedelta

    @classmethod
    def login(cls, max_attempts: int = 5, lockout_minutes: int = 15) -> "AttemptPolicy":
        return cls(max_attempts=max_attempts, lockout=timedelta(minutes=lockout_minutes))

    @classmethod
    def otp(cls, max_attempts: int = 3, lockout_minutes: int = 15) -> "AttemptPolicy":
        return cls(max_attempts=max_attempts, lockout=timedelta(minutes=lockout_minutes))

    @staticmethod
    def is_locked(locked_until: Optional[datetime], now: Optional[datetime] = None) -> bool:
        if locked_until is None:
            return False
        now = now or datetime.now(timezone.utc)
        return _aware(locked_until) > now

    @staticmethod
    def minutes_remaining(locked_until: datetime, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return minutes_until((_aware(locked_until) - now).total_seconds())


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
