"""
Careflow Configuration Module

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files.

Settings are read at the application edge only; the core components
receive their tables and thresholds through constructors.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from careflow.models.risk import RiskCategory


class CareflowSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CAREFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_json: bool = True

    # Storage backend: memory, postgres
    repository_backend: Literal["memory", "postgres"] = "memory"


class RiskSettings(BaseSettings):
    """Risk scoring settings."""

    model_config = SettingsConfigDict(
        env_prefix="CAREFLOW_RISK_",
        env_file=".env",
        extra="ignore",
    )

    high_threshold: float = 8.0
    medium_threshold: float = 4.0

    # Appended to the built-in crisis vocabulary, never replacing it
    extra_crisis_terms: list[str] = Field(default_factory=list)


class RoutingSettings(BaseSettings):
    """Provider routing settings."""

    model_config = SettingsConfigDict(
        env_prefix="CAREFLOW_ROUTING_",
        env_file=".env",
        extra="ignore",
    )

    # Categories that get a ranked recommendation right after scoring.
    # Urgent cases are always routed.
    routing_categories: list[RiskCategory] = Field(
        default_factory=lambda: [RiskCategory.MEDIUM, RiskCategory.HIGH]
    )

    # How many ranked candidates are kept in the routing decision record
    max_candidates: int = 10

    high_rating_threshold: float = 4.5

    # JSON roster loaded into the in-process provider directory at startup
    provider_roster_path: str | None = None


class PostgresSettings(BaseSettings):
    """PostgreSQL settings."""

    model_config = SettingsConfigDict(
        env_prefix="POSTGRES_",
        env_file=".env",
        extra="ignore",
    )

    host: str = "localhost"
    port: int = 5432
    user: str = "careflow"
    password: SecretStr = Field(default=SecretStr("careflow_dev_password"))
    database: str = "careflow"
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def connection_url(self) -> str:
        """Get the PostgreSQL connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql://{self.user}:{pwd}@{self.host}:{self.port}/{self.database}"


class Settings:
    """
    Aggregated settings container.

    Usage:
        from careflow.config import get_settings
        settings = get_settings()
        print(settings.risk.high_threshold)
        print(settings.postgres.connection_url)
    """

    def __init__(self):
        self.app = CareflowSettings()
        self.risk = RiskSettings()
        self.routing = RoutingSettings()
        self.postgres = PostgresSettings()

    @property
    def is_development(self) -> bool:
        return self.app.env == "development"

    @property
    def is_production(self) -> bool:
        return self.app.env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()
