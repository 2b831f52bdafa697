"""Shared fixtures for API endpoint tests.

Provides:
- FastAPI TestClient with auth and service dependencies overridden
- The StrategyTreeService behind the client, for arranging test data
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.auth_middleware import get_current_user
from src.api.strategies import router as strategies_router
from src.data.database.dependencies import get_strategy_service

# Fixed owner id used by all tests (overrides get_current_user dependency).
TEST_USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture()
def client(service) -> TestClient:
    """TestClient for an app with only the strategies router.

    - get_current_user always returns TEST_USER_ID
    - get_strategy_service returns the SQLite-backed test service
    """
    app = FastAPI()
    app.include_router(strategies_router)

    app.dependency_overrides[get_current_user] = lambda: TEST_USER_ID
    app.dependency_overrides[get_strategy_service] = lambda: service

    return TestClient(app)
