from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

from warden.service.clock import Clock, utc_now
from warden.storage.models import User

# (attempt threshold, lock duration), highest threshold first
DEFAULT_THRESHOLDS: Tuple[Tuple[int, timedelta], ...] = (
    (15, timedelta(hours=24)),
    (10, timedelta(hours=1)),
    (5, timedelta(minutes=30)),
)


class LockoutPolicy:
    """Escalating lock windows keyed off cumulative failed attempts.

    The policy is pure: stores call ``lock_until`` inside their own atomic
    increment so the counter and the lock always move together.
    """

    def __init__(
        self,
        thresholds: Sequence[Tuple[int, timedelta]] = DEFAULT_THRESHOLDS,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.thresholds = tuple(sorted(thresholds, key=lambda item: item[0], reverse=True))
        self.clock = clock

    def duration_for(self, attempts: int) -> Optional[timedelta]:
        for threshold, duration in self.thresholds:
            if attempts >= threshold:
                return duration
        return None

    def lock_until(
        self,
        attempts: int,
        now: Optional[datetime] = None,
        current: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Lock expiry after ``attempts`` failures.

        Below the first threshold the existing lock is kept as is. At or above
        it the window is ``now + duration`` but never earlier than a lock that
        is still running.
        """
        now = now or self.clock()
        duration = self.duration_for(attempts)
        if duration is None:
            return current
        candidate = now + duration
        if current is not None and current > now and current > candidate:
            return current
        return candidate

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        return user.account_locked_until is not None and user.account_locked_until > now

    def remaining(self, user: User, now: Optional[datetime] = None) -> timedelta:
        now = now or self.clock()
        if not self.is_locked(user, now):
            return timedelta(0)
        return user.account_locked_until - now


__all__ = ["DEFAULT_THRESHOLDS", "LockoutPolicy"]
