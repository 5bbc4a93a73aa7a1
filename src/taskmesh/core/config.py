"""Configuration management for TaskMesh."""

import os
from enum import Enum
from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import Intervals, Limits
from .enums import CooldownAnchor, MatchingPolicy


class EnvironmentType(str, Enum):
    """Environment types."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogFormat(str, Enum):
    """Log renderers."""

    CONSOLE = "console"
    JSON = "json"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="TASKMESH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: EnvironmentType = EnvironmentType.DEVELOPMENT
    debug: bool = False
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.CONSOLE

    # Persistence
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy async URL; unset keeps all state in memory",
    )
    database_echo: bool = False

    # Change relay
    redis_url: str = "redis://localhost:6379"
    change_relay_enabled: bool = False

    # Loop cadence (seconds)
    scheduler_interval: float = Intervals.SCHEDULER_TICK
    metrics_interval: float = Intervals.METRICS_COLLECTION
    alert_interval: float = Intervals.ALERT_EVALUATION

    # Metric windows (seconds)
    agent_metrics_window: int = Intervals.AGENT_METRICS_WINDOW
    system_metrics_window: int = Intervals.SYSTEM_METRICS_WINDOW

    # Scheduling policy
    matching_policy: MatchingPolicy = MatchingPolicy.CAPABILITY_ONLY
    task_timeout: float | None = Field(
        default=None, description="Seconds before a running task is failed"
    )
    max_agents: int = Limits.MAX_AGENTS

    # Alerting policy
    alert_cooldown_anchor: CooldownAnchor = CooldownAnchor.RESOLUTION
    default_alert_cooldown: int = Field(default=5, description="Minutes")

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == EnvironmentType.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == EnvironmentType.PRODUCTION

    @property
    def loop_intervals(self) -> dict[str, float]:
        """Cadence of each background loop."""
        return {
            "scheduler": self.scheduler_interval,
            "metrics": self.metrics_interval,
            "alerts": self.alert_interval,
        }

    def validate_configuration(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        for name, interval in self.loop_intervals.items():
            if interval <= 0:
                issues.append(f"{name} interval must be positive")

        if self.task_timeout is not None and self.task_timeout <= 0:
            issues.append("TASK_TIMEOUT must be positive when set")

        if self.default_alert_cooldown < 0:
            issues.append("DEFAULT_ALERT_COOLDOWN cannot be negative")

        if self.max_agents < 1:
            issues.append("MAX_AGENTS must be at least 1")

        if self.database_url and "+" not in self.database_url.split("://", 1)[0]:
            issues.append(
                "DATABASE_URL must name an async driver (e.g. postgresql+asyncpg://)"
            )

        if self.change_relay_enabled and not self.redis_url.startswith(
            ("redis://", "rediss://")
        ):
            issues.append("REDIS_URL must be a Redis URL")

        if self.is_production and self.database_url is None:
            issues.append("DATABASE_URL must be set in production")

        return issues


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loaded once."""
    return Settings()


def validate_environment(settings: Settings | None = None) -> None:
    """Validate environment configuration and raise if invalid."""
    issues = (settings or get_settings()).validate_configuration()
    if issues:
        error_msg = "Configuration validation failed:\n" + "\n".join(
            f"- {issue}" for issue in issues
        )
        raise ValueError(error_msg)


def get_api_config(settings: Settings | None = None) -> dict[str, Any]:
    """Get API configuration."""
    settings = settings or get_settings()
    return {
        "host": settings.api_host,
        "port": settings.api_port,
        "debug": settings.debug,
        "log_level": settings.log_level.lower(),
        "reload": settings.is_development and os.getenv("TASKMESH_RELOAD") == "1",
    }
