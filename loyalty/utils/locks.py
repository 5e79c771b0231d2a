"""
Per-user mutual exclusion for balance-affecting operations.

Earn, spend, adjust and expire for one (tenant, user) pair must not interleave
inside a worker process. Database row locks (SELECT ... FOR UPDATE) cover
separate processes; this registry covers threads of the same process, which
matters on SQLite where FOR UPDATE is a no-op.

Locks are reentrant so one unit of work (e.g. an order that earns order points,
a streak bonus and a first-order bonus) can call nested helpers. Entries are
dropped from the registry as soon as nobody holds or waits on them.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, List, Tuple

from .exceptions import LockTimeoutError


class UserLockRegistry:
    """Reference-counted registry of reentrant locks keyed by (tenant, user)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[Hashable, Hashable], List] = {}  # key -> [RLock, holders]

    @staticmethod
    def _key(tenant_id, user_id) -> Tuple[str, str]:
        return str(tenant_id), str(user_id)

    @contextmanager
    def hold(self, tenant_id, user_id, timeout: float = None):
        """
        Hold the lock for one user for the duration of the block.

        Args:
            tenant_id: Tenant the user belongs to
            user_id: User whose balance is being mutated
            timeout: Seconds to wait; None waits without limit

        Raises:
            LockTimeoutError: If the lock was not acquired in time
        """
        key = self._key(tenant_id, user_id)

        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)

        try:
            if not acquired:
                raise LockTimeoutError(user_id)
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def active_keys(self):
        """Keys currently held or awaited (for diagnostics)."""
        with self._guard:
            return list(self._locks.keys())


# Process-wide registry
user_locks = UserLockRegistry()
