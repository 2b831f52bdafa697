"""Data layer for strategy tree persistence."""

from src.data.database import (
    Base,
    DatabaseManager,
    StrategyRepository,
    get_db_manager,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "StrategyRepository",
    "get_db_manager",
]
