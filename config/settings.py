"""Pydantic settings for configuration management."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Log level")
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log format",
    )
    file: Path | None = Field(
        default=Path("logs/app.log"),
        description="Log file path (None for stdout only)",
    )
    rotate_size_mb: int = Field(
        default=10,
        description="Log file rotation size in MB",
    )
    retain_count: int = Field(
        default=5,
        description="Number of rotated log files to retain",
    )


class DatabaseConfig(BaseSettings):
    """PostgreSQL database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    name: str = Field(default="strategy_blocks", description="Database name")
    user: str = Field(default="strategy_blocks", description="Database user")
    password: str = Field(default="", description="Database password")
    url_override: str = Field(
        default="",
        description="Full SQLAlchemy URL; takes precedence over host/port/name (e.g. sqlite:///local.db)",
    )
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max pool overflow connections")
    pool_recycle: int = Field(default=3600, description="Recycle connections after N seconds (avoids stale connections)")
    pool_timeout: int = Field(default=30, description="Seconds to wait for a connection from pool before timeout")
    echo: bool = Field(default=False, description="Echo SQL statements for debugging")

    @property
    def url(self) -> str:
        """Build the database connection URL."""
        if self.url_override:
            return self.url_override
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class AuthConfig(BaseSettings):
    """Authentication configuration."""

    model_config = SettingsConfigDict(env_prefix="AUTH_")

    jwt_secret_key: str = Field(default="change-me-in-production", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    dev_mode: bool = Field(default=False, description="Bypass token validation and use the dev user")
    dev_user_id: str = Field(default="dev-user", description="Owner id used when dev_mode is enabled")

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Warn if using default JWT secret (production safety check)."""
        if v == "change-me-in-production":
            import logging
            logging.getLogger(__name__).warning(
                "AUTH_JWT_SECRET_KEY is set to the default value. "
                "Set a strong secret in .env for production use."
            )
        return v


class ServerConfig(BaseSettings):
    """Backend server configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    port: int = Field(default=8729, description="Backend server port")
    host: str = Field(default="0.0.0.0", description="Backend server host")


class StrategyTreeConfig(BaseSettings):
    """Strategy block tree configuration."""

    model_config = SettingsConfigDict(env_prefix="STRATEGY_TREE_")

    lock_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Max seconds a mutation waits for the per-strategy lock",
    )
    max_depth: int = Field(
        default=32,
        ge=1,
        description="Maximum block depth below the root",
    )
    export_format_version: int = Field(
        default=1,
        description="Version stamped on exported strategy documents",
    )


class Settings(BaseSettings):
    """Main settings class combining all configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "paper", "production"] = Field(
        default="development",
        description="Environment type",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    strategy_tree: StrategyTreeConfig = Field(default_factory=StrategyTreeConfig)

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        """Enforce safety invariants for production environments."""
        if self.environment == "production":
            if self.auth.jwt_secret_key == "change-me-in-production":
                raise ValueError(
                    "AUTH_JWT_SECRET_KEY must be changed from the default in production"
                )
            if self.auth.dev_mode:
                raise ValueError(
                    "AUTH_DEV_MODE must not be True in production"
                )
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Settings instance
        """
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            config_dict = yaml.safe_load(f) or {}

        return cls(**config_dict)

    def to_yaml(self, path: str | Path) -> None:
        """Save settings to YAML file.

        Args:
            path: Path to save configuration
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Convert to dict, excluding secrets
        config_dict = self.model_dump(
            mode="json",
            exclude={"auth": {"jwt_secret_key"}, "database": {"password"}},
        )

        with open(path, "w") as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance
    """
    # Try to load from config file first
    config_path = Path("config/strategy_tree.yaml")
    if config_path.exists():
        return Settings.from_yaml(config_path)

    return Settings()
