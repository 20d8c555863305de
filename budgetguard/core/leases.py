"""Per-month decision leases. Thread-safe."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, List, Optional

from budgetguard.core.errors import LockBusy

logger = logging.getLogger(__name__)


class MonthLeaseRegistry:
    """Exclusive leases serializing compute-then-commit for a campaign month.

    A request that cannot obtain the lease within the timeout is rejected with
    LockBusy so the caller can retry with backoff.
    """

    def __init__(self, timeout: Optional[float] = 5.0):
        """
        Args:
            timeout: Seconds to wait for a lease. None waits forever, 0 fails fast.
        """
        self._timeout = timeout
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, month: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(month)
            if lock is None:
                lock = threading.Lock()
                self._locks[month] = lock
            return lock

    def is_held(self, month: str) -> bool:
        return self._lock_for(month).locked()

    def acquire(self, month: str) -> None:
        """Take the lease for month or raise LockBusy."""
        lock = self._lock_for(month)
        if self._timeout is None:
            acquired = lock.acquire()
        else:
            acquired = lock.acquire(timeout=self._timeout) if self._timeout > 0 else lock.acquire(blocking=False)
        if not acquired:
            raise LockBusy(f"Decision lease for {month} is held by another decision", month=month)
        logger.debug("Acquired decision lease for %s", month)

    def release(self, month: str) -> None:
        self._lock_for(month).release()
        logger.debug("Released decision lease for %s", month)

    @contextmanager
    def hold(self, *months: str) -> Generator[None, None, None]:
        """Hold the leases for months, acquired in ascending order.

        Example:
            with leases.hold("2026-10"):
                ... read snapshot, decide, commit ...
        """
        held: List[str] = []
        try:
            for month in sorted(set(months)):
                self.acquire(month)
                held.append(month)
            yield
        finally:
            for month in reversed(held):
                self.release(month)
