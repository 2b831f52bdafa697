"""Per-strategy mutation locks.

Mutations of one strategy are serialized in-process by a lock keyed on
the strategy id; the repository additionally takes a row lock on the
strategy inside the transaction so separate processes sharing a
PostgreSQL database serialize as well. Unrelated strategies never
contend.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Generator

from src.strategy_tree.errors import StrategyBusyError

logger = logging.getLogger(__name__)


class StrategyLockRegistry:
    """Hands out one lock per strategy id.

    Locks live in a WeakValueDictionary, so an id's lock is dropped once
    no caller holds or waits on it.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: "weakref.WeakValueDictionary[int, _StrategyLock]" = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()

    def _lock_for(self, strategy_id: int) -> "_StrategyLock":
        with self._registry_lock:
            lock = self._locks.get(strategy_id)
            if lock is None:
                lock = _StrategyLock()
                self._locks[strategy_id] = lock
            return lock

    @contextmanager
    def hold(self, strategy_id: int, timeout: float | None = None) -> Generator[None, None, None]:
        """Hold the lock for strategy_id for the duration of the block.

        Raises:
            StrategyBusyError: if the lock is not acquired within timeout
        """
        timeout = self.timeout if timeout is None else timeout
        lock = self._lock_for(strategy_id)
        if not lock.acquire(timeout=timeout):
            logger.warning(
                "Timed out after %.2fs waiting for strategy lock %s", timeout, strategy_id,
            )
            raise StrategyBusyError(
                f"Strategy {strategy_id} is being modified, retry later",
                strategy_id=strategy_id,
            )
        try:
            yield
        finally:
            lock.release()


class _StrategyLock:
    """threading.Lock wrapper; plain Lock objects cannot be weakly referenced."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self, timeout: float = -1) -> bool:
        return self._lock.acquire(timeout=timeout)

    def release(self) -> None:
        self._lock.release()
