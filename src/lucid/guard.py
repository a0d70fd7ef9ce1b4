"""Per-user mutual exclusion for job execution.

The guard is in-process only. A second scheduler instance keeps its own
set, so the one-job-per-user guarantee holds within a single process.
"""

import logging
import threading

logger = logging.getLogger("lucid.guard")


class UserBusyError(RuntimeError):
    """Raised when a user already has a job executing."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} already has a job in progress")
        self.user_id = user_id


class UserLease:
    """Scoped hold on one user's lock. Release is idempotent."""

    def __init__(self, guard: "ConcurrencyGuard", user_id: str):
        self._guard = guard
        self.user_id = user_id
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._guard.release(self.user_id)

    @property
    def released(self) -> bool:
        return self._released

    def __enter__(self) -> "UserLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class ConcurrencyGuard:
    """Set of user ids that currently have a job executing."""

    def __init__(self):
        self._held: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, user_id: str) -> bool:
        with self._lock:
            if user_id in self._held:
                return False
            self._held.add(user_id)
            return True

    def release(self, user_id: str) -> None:
        with self._lock:
            self._held.discard(user_id)

    def acquire(self, user_id: str) -> UserLease | None:
        """Acquire a lease for ``user_id``, or None if already held."""
        if not self.try_acquire(user_id):
            return None
        return UserLease(self, user_id)

    def lease(self, user_id: str) -> UserLease:
        """Like acquire, but raises UserBusyError instead of returning None."""
        lease = self.acquire(user_id)
        if lease is None:
            raise UserBusyError(user_id)
        return lease

    def is_held(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._held

    @property
    def held_count(self) -> int:
        with self._lock:
            return len(self._held)
