"""Database module for strategy tree persistence."""

from src.data.database.connection import DatabaseManager, get_db_manager
from src.data.database.dependencies import get_strategy_service, session_scope
from src.data.database.models import Base
from src.data.database.strategy_models import Action, Condition, Strategy, StrategyBlock
from src.data.database.strategy_repository import StrategyRepository

__all__ = [
    # Connection
    "DatabaseManager",
    "get_db_manager",
    # Dependencies
    "get_strategy_service",
    "session_scope",
    # Models
    "Base",
    "Strategy",
    "StrategyBlock",
    "Condition",
    "Action",
    # Repository
    "StrategyRepository",
]
