"""Unified database access layer.

Single source of truth for database session management:
- get_strategy_service(): FastAPI Depends returning StrategyTreeService
- session_scope()       : Context manager for scripts / non-DI usage
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

from src.data.database.connection import get_db_manager

logger = logging.getLogger(__name__)


def get_strategy_service():
    """FastAPI dependency returning a StrategyTreeService.

    The service opens its own transaction per operation, so it receives
    the session factory rather than a request-scoped session.

    Usage::

        @router.get("/strategies/{strategy_id}")
        def get_strategy(service: StrategyTreeService = Depends(get_strategy_service)):
            ...
    """
    from src.strategy_tree.service import StrategyTreeService

    return StrategyTreeService(get_db_manager().get_session)


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager for non-DI database access.

    Usage::

        with session_scope() as session:
            repo = StrategyRepository(session)
            repo.list_active_strategy_ids()
    """
    with get_db_manager().get_session() as session:
        yield session
