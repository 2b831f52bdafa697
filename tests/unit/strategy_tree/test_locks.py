"""Tests for the per-strategy lock registry."""

import gc
import threading

import pytest

from src.strategy_tree.errors import StrategyBusyError
from src.strategy_tree.locks import StrategyLockRegistry


class TestStrategyLockRegistry:
    def test_same_strategy_is_exclusive(self):
        locks = StrategyLockRegistry(timeout=0.05)
        with locks.hold(1):
            with pytest.raises(StrategyBusyError) as exc_info:
                with locks.hold(1):
                    pass
        assert exc_info.value.detail == {"strategy_id": 1}

    def test_lock_released_after_block(self):
        locks = StrategyLockRegistry(timeout=0.05)
        with locks.hold(1):
            pass
        with locks.hold(1):
            pass

    def test_lock_released_on_error(self):
        locks = StrategyLockRegistry(timeout=0.05)
        with pytest.raises(RuntimeError):
            with locks.hold(1):
                raise RuntimeError("boom")
        with locks.hold(1):
            pass

    def test_different_strategies_do_not_contend(self):
        locks = StrategyLockRegistry(timeout=0.05)
        with locks.hold(1):
            with locks.hold(2):
                pass

    def test_waiter_acquires_after_release(self):
        locks = StrategyLockRegistry(timeout=2.0)
        acquired = threading.Event()
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(7):
                holding.set()
                release.wait(2.0)

        def waiter():
            with locks.hold(7):
                acquired.set()

        t1 = threading.Thread(target=holder)
        t1.start()
        holding.wait(2.0)
        t2 = threading.Thread(target=waiter)
        t2.start()
        assert not acquired.wait(0.05)
        release.set()
        t1.join()
        t2.join()
        assert acquired.is_set()

    def test_idle_locks_are_dropped(self):
        locks = StrategyLockRegistry()
        with locks.hold(3):
            assert 3 in locks._locks
        gc.collect()
        assert 3 not in locks._locks
