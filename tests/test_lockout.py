from datetime import datetime, timedelta, timezone

import pytest

from warden.service.lockout import DEFAULT_THRESHOLDS, LockoutPolicy
from warden.storage.models import User

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _user(**kwargs) -> User:
    return User(id="u1", email="a@example.com", first_name="A", last_name="B", password_hash="x", **kwargs)


@pytest.mark.parametrize(
    "attempts,expected",
    [
        (0, None),
        (4, None),
        (5, timedelta(minutes=30)),
        (9, timedelta(minutes=30)),
        (10, timedelta(hours=1)),
        (14, timedelta(hours=1)),
        (15, timedelta(hours=24)),
        (40, timedelta(hours=24)),
    ],
)
def test_duration_tiers(attempts, expected):
    assert LockoutPolicy().duration_for(attempts) == expected


def test_below_threshold_keeps_current_lock():
    policy = LockoutPolicy()
    current = NOW + timedelta(minutes=3)
    assert policy.lock_until(4, NOW, current) == current
    assert policy.lock_until(2, NOW, None) is None


def test_lock_starts_at_now_plus_duration():
    policy = LockoutPolicy()
    assert policy.lock_until(5, NOW) == NOW + timedelta(minutes=30)
    assert policy.lock_until(15, NOW) == NOW + timedelta(hours=24)


def test_lock_never_shortens_a_running_lock():
    policy = LockoutPolicy()
    running = NOW + timedelta(hours=20)
    assert policy.lock_until(10, NOW, running) == running


def test_expired_lock_is_replaced():
    policy = LockoutPolicy()
    stale = NOW - timedelta(minutes=1)
    assert policy.lock_until(6, NOW, stale) == NOW + timedelta(minutes=30)


def test_is_locked_and_remaining_use_clock():
    policy = LockoutPolicy(clock=lambda: NOW)
    user = _user(account_locked_until=NOW + timedelta(minutes=10))
    assert policy.is_locked(user)
    assert policy.remaining(user) == timedelta(minutes=10)
    assert not policy.is_locked(user, NOW + timedelta(minutes=10))
    assert policy.remaining(user, NOW + timedelta(minutes=11)) == timedelta(0)


def test_unsorted_thresholds_are_ordered():
    policy = LockoutPolicy(tuple(reversed(DEFAULT_THRESHOLDS)))
    assert policy.duration_for(12) == timedelta(hours=1)
