"""Tests for the application factory."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from config.settings import LoggingConfig, Settings
from src.api.app import create_app


def _settings() -> Settings:
    return Settings(logging=LoggingConfig(format="text", file=None))


class TestCreateApp:
    def test_health_reports_database(self):
        with patch("src.api.app.get_db_manager") as get_db_manager:
            get_db_manager.return_value.health_check.return_value = True
            with TestClient(create_app(_settings())) as client:
                response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": True}

    def test_degraded_when_database_down(self):
        with patch("src.api.app.get_db_manager") as get_db_manager:
            get_db_manager.return_value.health_check.return_value = False
            with TestClient(create_app(_settings())) as client:
                response = client.get("/health")

        assert response.json()["status"] == "degraded"

    def test_pool_disposed_on_shutdown(self):
        with patch("src.api.app.get_db_manager") as get_db_manager:
            with TestClient(create_app(_settings())):
                get_db_manager.return_value.dispose.assert_not_called()

        get_db_manager.return_value.dispose.assert_called_once()

    def test_strategy_routes_mounted(self):
        app = create_app(_settings())
        paths = {route.path for route in app.routes}
        assert "/api/strategies" in paths
        assert "/api/strategies/{strategy_id}/blocks/{block_id}/move" in paths
