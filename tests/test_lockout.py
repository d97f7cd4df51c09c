"""Tests for the failed-login lockout policy."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

import pytest

from genesis_auth.service.lockout import LockoutPolicy


@pytest.fixture
def policy():
    return LockoutPolicy(max_attempts=5, duration=timedelta(minutes=30))


@pytest.fixture
def user(memory_store):
    return memory_store.insert_user(email="lock@example.com", password_hash="x", name="Lock")


class TestEvaluate:
    def test_unlocked_user(self, policy, user, clock):
        state = policy.evaluate(user, clock())
        assert state.locked is False
        assert state.expired is False

    def test_remaining_seconds_rounds_up(self, policy, user, clock):
        locked = replace(user, locked_until=clock() + timedelta(seconds=90, milliseconds=1))
        state = policy.evaluate(locked, clock())
        assert state.locked is True
        assert state.remaining_seconds == 91

    def test_lock_expiring_now_is_not_locked(self, policy, user, clock):
        lapsed = replace(user, locked_until=clock())
        state = policy.evaluate(lapsed, clock())
        assert state.locked is False
        assert state.expired is True


class TestRecordFailure:
    def test_fifth_failure_locks_for_thirty_minutes(self, policy, memory_store, user, clock):
        for attempt in range(1, 5):
            outcome = policy.record_failure(memory_store, user.id, clock())
            assert outcome.attempts == attempt
            assert outcome.locked is False

        outcome = policy.record_failure(memory_store, user.id, clock())
        assert outcome.attempts == 5
        assert outcome.locked is True
        assert outcome.locked_until == clock() + timedelta(minutes=30)

    def test_failure_after_lapsed_lock_restarts_count(self, policy, memory_store, user, clock):
        for _ in range(5):
            policy.record_failure(memory_store, user.id, clock())
        clock.advance(minutes=31)

        outcome = policy.record_failure(memory_store, user.id, clock())
        assert outcome.attempts == 1
        assert outcome.locked is False
        assert memory_store.find_user_by_id(user.id).locked_until is None

    def test_concurrent_failures_are_all_counted(self, policy, memory_store, user, clock):
        now = clock()
        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(
                pool.map(lambda _: policy.record_failure(memory_store, user.id, now), range(8))
            )

        assert sorted(o.attempts for o in outcomes) == list(range(1, 9))
        stored = memory_store.find_user_by_id(user.id)
        assert stored.failed_login_attempts == 8
        assert stored.locked_until == now + timedelta(minutes=30)

    def test_reset_patch_clears_counter_and_lock(self, policy, memory_store, user, clock):
        for _ in range(5):
            policy.record_failure(memory_store, user.id, clock())
        assert memory_store.atomic_update_user(user.id, {}, policy.reset_patch())

        stored = memory_store.find_user_by_id(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None
