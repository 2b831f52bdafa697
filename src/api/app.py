"""FastAPI application factory for the strategy block service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config.settings import Settings, get_settings
from src.api.strategies import router as strategies_router
from src.data.database.connection import get_db_manager
from src.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Dispose the connection pool when the application stops."""
    yield
    get_db_manager().dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application with logging configured from settings."""
    settings = settings or get_settings()
    setup_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        file=settings.logging.file,
        rotate_size_mb=settings.logging.rotate_size_mb,
        retain_count=settings.logging.retain_count,
    )

    app = FastAPI(title="Strategy Blocks API", lifespan=lifespan)
    app.include_router(strategies_router)

    @app.get("/health")
    def health():
        healthy = get_db_manager().health_check()
        return {"status": "ok" if healthy else "degraded", "database": healthy}

    logger.info("Strategy Blocks API created (environment=%s)", settings.environment)
    return app
