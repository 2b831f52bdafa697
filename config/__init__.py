"""Configuration module for the strategy block tree service.

Provides centralized configuration management using:
- Environment variables for secrets
- YAML files for complex configuration
- Pydantic for validation
"""

from config.settings import (
    Settings,
    get_settings,
    AuthConfig,
    DatabaseConfig,
    LoggingConfig,
    ServerConfig,
    StrategyTreeConfig,
)

__all__ = [
    "Settings",
    "get_settings",
    "AuthConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "ServerConfig",
    "StrategyTreeConfig",
]
