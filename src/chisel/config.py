"""
Configuration module for the Chisel engine.

Loads configuration from environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class EngineConfig:
    """Planner and executor configuration."""

    max_concurrency: int = 10
    operation_timeout: float = 1800.0  # seconds, covers snapshot read + apply
    enable_rollback: bool = True
    plan_concurrency: int = 5
    read_timeout: Optional[float] = None

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        read_timeout = os.getenv("CHISEL_READ_TIMEOUT")
        return cls(
            max_concurrency=int(os.getenv("CHISEL_MAX_CONCURRENCY", "10")),
            operation_timeout=float(os.getenv("CHISEL_OPERATION_TIMEOUT", "1800")),
            enable_rollback=_env_bool("CHISEL_ENABLE_ROLLBACK", "true"),
            plan_concurrency=int(os.getenv("CHISEL_PLAN_CONCURRENCY", "5")),
            read_timeout=float(read_timeout) if read_timeout else None,
        )


@dataclass
class DriftConfig:
    """Scheduled drift detection configuration."""

    interval: float = 900.0  # seconds between checks of a module
    max_retries: int = 3
    retry_delay: float = 30.0
    timeout: float = 300.0
    notify_threshold: int = 1  # minimum drifted resources before notifying

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            interval=float(os.getenv("CHISEL_DRIFT_INTERVAL", "900")),
            max_retries=int(os.getenv("CHISEL_DRIFT_MAX_RETRIES", "3")),
            retry_delay=float(os.getenv("CHISEL_DRIFT_RETRY_DELAY", "30")),
            timeout=float(os.getenv("CHISEL_DRIFT_TIMEOUT", "300")),
            notify_threshold=int(os.getenv("CHISEL_DRIFT_NOTIFY_THRESHOLD", "1")),
        )


@dataclass
class NotificationConfig:
    """Drift notification channels."""

    webhook_url: Optional[str] = None
    webhook_headers: Dict[str, str] = field(default_factory=dict)
    webhook_timeout: float = 10.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        headers = {}
        if os.getenv("CHISEL_WEBHOOK_HEADERS"):
            try:
                headers = json.loads(os.getenv("CHISEL_WEBHOOK_HEADERS"))
            except json.JSONDecodeError:
                logger.warning("Ignoring CHISEL_WEBHOOK_HEADERS: not valid JSON")

        return cls(
            webhook_url=os.getenv("CHISEL_WEBHOOK_URL") or None,
            webhook_headers=headers,
            webhook_timeout=float(os.getenv("CHISEL_WEBHOOK_TIMEOUT", "10")),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_env(cls):
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class Config:
    """Main configuration object."""

    engine: EngineConfig
    drift: DriftConfig
    notifications: NotificationConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            engine=EngineConfig.from_env(),
            drift=DriftConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            engine=EngineConfig(),
            drift=DriftConfig(),
            notifications=NotificationConfig(),
            logging=LoggingConfig(),
        )

    def validate(self) -> None:
        """
        Check numeric settings.

        Raises:
            ValueError: If a setting is out of range.
        """
        positive = {
            "CHISEL_MAX_CONCURRENCY": self.engine.max_concurrency,
            "CHISEL_OPERATION_TIMEOUT": self.engine.operation_timeout,
            "CHISEL_PLAN_CONCURRENCY": self.engine.plan_concurrency,
            "CHISEL_DRIFT_INTERVAL": self.drift.interval,
            "CHISEL_DRIFT_TIMEOUT": self.drift.timeout,
            "CHISEL_DRIFT_NOTIFY_THRESHOLD": self.drift.notify_threshold,
            "CHISEL_WEBHOOK_TIMEOUT": self.notifications.webhook_timeout,
        }
        if self.engine.read_timeout is not None:
            positive["CHISEL_READ_TIMEOUT"] = self.engine.read_timeout
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        if self.drift.max_retries < 0:
            raise ValueError("CHISEL_DRIFT_MAX_RETRIES cannot be negative")
        if self.drift.retry_delay < 0:
            raise ValueError("CHISEL_DRIFT_RETRY_DELAY cannot be negative")


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        loaded = Config.from_env()
        loaded.validate()
        config = loaded
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
