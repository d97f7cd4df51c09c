from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from genesis_auth.config import Settings
from genesis_auth.storage.models import User


class FailureCounter(Protocol):
    def increment_failed_logins(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Tuple[int, Optional[datetime]]: ...


@dataclass(frozen=True)
class LockState:
    locked: bool
    remaining_seconds: int = 0
    # a lock was set but has lapsed and should be cleared
    expired: bool = False


@dataclass(frozen=True)
class FailureOutcome:
    attempts: int
    locked: bool
    locked_until: Optional[datetime]


class LockoutPolicy:
    """Temporary account lock after repeated failed logins."""

    def __init__(self, max_attempts: int = 5, duration: timedelta = timedelta(minutes=30)) -> None:
        self.max_attempts = max_attempts
        self.duration = duration

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.lockout_max_attempts,
            duration=timedelta(minutes=settings.lockout_duration_minutes),
        )

    def evaluate(self, user: User, now: datetime) -> LockState:
        if user.locked_until is None:
            return LockState(locked=False)
        if user.locked_until > now:
            remaining = math.ceil((user.locked_until - now).total_seconds())
            return LockState(locked=True, remaining_seconds=max(1, remaining))
        return LockState(locked=False, expired=True)

    def record_failure(self, store: FailureCounter, user_id: str, now: datetime) -> FailureOutcome:
        """Count one failure; the store sets the lock in the same atomic step."""
        attempts, locked_until = store.increment_failed_logins(
            user_id,
            threshold=self.max_attempts,
            lock_until=now + self.duration,
            now=now,
        )
        locked = locked_until is not None and locked_until > now
        return FailureOutcome(attempts=attempts, locked=locked, locked_until=locked_until)

    @staticmethod
    def reset_patch() -> dict:
        return {"failed_login_attempts": 0, "locked_until": None}
