"""API subpackage for all REST API routers."""

from src.api.strategies import router as strategies_router

__all__ = ["strategies_router"]
