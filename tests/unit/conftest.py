"""Shared fixtures for strategy tree tests.

Provides:
- DatabaseManager bound to a file-backed SQLite database per test
  (foreign keys on, tables created from the ORM metadata)
- StrategyTreeService with its own lock registry
- Sample condition/action payloads
"""

from typing import Generator

import pytest

from config.settings import DatabaseConfig, StrategyTreeConfig
from src.data.database.connection import DatabaseManager
from src.strategy_tree.locks import StrategyLockRegistry
from src.strategy_tree.service import StrategyTreeService

OWNER_ID = "user-1"
OTHER_OWNER_ID = "user-2"


@pytest.fixture()
def db_manager(tmp_path) -> Generator[DatabaseManager, None, None]:
    """DatabaseManager on a fresh SQLite file.

    A file (not :memory:) so that threads in concurrency tests share one
    database through separate connections.
    """
    manager = DatabaseManager(DatabaseConfig(url_override=f"sqlite:///{tmp_path / 'strategies.db'}"))
    manager.create_tables()
    yield manager
    manager.dispose()


@pytest.fixture()
def tree_config() -> StrategyTreeConfig:
    return StrategyTreeConfig(lock_timeout_seconds=5.0, max_depth=32, export_format_version=1)


@pytest.fixture()
def service(db_manager: DatabaseManager, tree_config: StrategyTreeConfig) -> StrategyTreeService:
    return StrategyTreeService(
        db_manager.get_session,
        locks=StrategyLockRegistry(timeout=tree_config.lock_timeout_seconds),
        config=tree_config,
    )


@pytest.fixture()
def strategy(service: StrategyTreeService):
    """A strategy with an initialized ROOT and no other blocks."""
    return service.create_strategy(OWNER_ID, "Test Strategy", "fixture strategy")


@pytest.fixture()
def sma_condition() -> dict:
    """SMA(AAPL, 1min) < 212."""
    return {
        "indicator_type": "SMA",
        "symbol": "AAPL",
        "interval": "1min",
        "parameters": {"period": 20},
        "operator": "LESS_THAN",
        "target_value": 212,
    }


@pytest.fixture()
def log_action() -> dict:
    return {"action_type": "LOG_MESSAGE", "parameters": {"message": "hit"}}


@pytest.fixture()
def buy_action() -> dict:
    return {
        "action_type": "BUY",
        "parameters": {"symbol": "AAPL", "quantity": 10, "orderType": "market"},
    }
