"""Tests for the per-user concurrency guard."""

import pytest

from lucid.guard import ConcurrencyGuard, UserBusyError


class TestTryAcquire:
    def test_second_acquire_refused(self):
        guard = ConcurrencyGuard()
        assert guard.try_acquire("alice") is True
        assert guard.try_acquire("alice") is False

    def test_users_independent(self):
        guard = ConcurrencyGuard()
        assert guard.try_acquire("alice") is True
        assert guard.try_acquire("bob") is True
        assert guard.held_count == 2

    def test_release_is_idempotent(self):
        guard = ConcurrencyGuard()
        guard.try_acquire("alice")
        guard.release("alice")
        guard.release("alice")
        guard.release("never-held")
        assert guard.is_held("alice") is False
        assert guard.try_acquire("alice") is True


class TestUserLease:
    def test_acquire_returns_none_when_held(self):
        guard = ConcurrencyGuard()
        lease = guard.acquire("alice")
        assert lease is not None
        assert guard.acquire("alice") is None

    def test_released_on_exit(self):
        guard = ConcurrencyGuard()
        with guard.acquire("alice"):
            assert guard.is_held("alice")
        assert not guard.is_held("alice")

    def test_released_on_exception(self):
        guard = ConcurrencyGuard()
        with pytest.raises(RuntimeError):
            with guard.acquire("alice"):
                raise RuntimeError("handler blew up")
        assert not guard.is_held("alice")

    def test_double_release_does_not_free_new_holder(self):
        guard = ConcurrencyGuard()
        first = guard.acquire("alice")
        first.release()
        second = guard.acquire("alice")
        first.release()
        assert second is not None
        assert guard.is_held("alice")
        assert first.released

    def test_lease_raises_when_busy(self):
        guard = ConcurrencyGuard()
        with guard.lease("alice"):
            with pytest.raises(UserBusyError, match="alice"):
                guard.lease("alice")
