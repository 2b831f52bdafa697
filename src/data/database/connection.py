"""Database connection management with connection pooling."""

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from config.settings import DatabaseConfig, get_settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manage database connections with connection pooling.

    PostgreSQL is the production backend; SQLite URLs (url_override) are
    supported for local use and tests, with foreign keys switched on.
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize database manager.

        Args:
            config: Database configuration settings
        """
        self.config = config
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            if self.config.is_sqlite:
                logger.info("Creating SQLite database engine (%s)", self.config.url)
                self._engine = create_engine(
                    self.config.url,
                    connect_args={"check_same_thread": False},
                    echo=self.config.echo,
                )

                @event.listens_for(self._engine, "connect")
                def enable_foreign_keys(dbapi_connection, connection_record):
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.close()
            else:
                logger.info(
                    "Creating database engine (pool_size=%d, max_overflow=%d)",
                    self.config.pool_size, self.config.max_overflow,
                )
                self._engine = create_engine(
                    self.config.url,
                    poolclass=QueuePool,
                    pool_size=self.config.pool_size,
                    max_overflow=self.config.max_overflow,
                    pool_recycle=self.config.pool_recycle,
                    pool_timeout=self.config.pool_timeout,
                    pool_pre_ping=True,
                    echo=self.config.echo,
                )

                # Set timezone to UTC for all connections
                @event.listens_for(self._engine, "connect")
                def set_timezone(dbapi_connection, connection_record):
                    cursor = dbapi_connection.cursor()
                    cursor.execute("SET timezone = 'UTC'")
                    cursor.close()
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session with automatic cleanup.

        Commits when the block exits normally, rolls back and re-raises
        on any exception.

        Usage:
            with db_manager.get_session() as session:
                StrategyRepository(session).create_strategy(...)
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            logger.warning("Database session error, rolling back")
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all database tables.

        Note: In production, use Alembic migrations instead.
        """
        from src.data.database import strategy_models  # noqa: F401  registers tables on Base
        from src.data.database.models import Base
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        """Dispose of the connection pool."""
        if self._engine is not None:
            logger.info("Disposing database connection pool")
            self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def health_check(self) -> bool:
        """Check if database connection is healthy."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.error("Database health check failed", exc_info=True)
            return False


@lru_cache
def get_db_manager() -> DatabaseManager:
    """Get the singleton database manager instance."""
    return DatabaseManager(get_settings().database)


def reset_db_manager() -> None:
    """Dispose the current manager and forget it (tests, config changes)."""
    if get_db_manager.cache_info().currsize:
        get_db_manager().dispose()
    get_db_manager.cache_clear()
