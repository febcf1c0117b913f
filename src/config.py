"""
Configuration module for the Dead Man's Snitch operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dmsclient import DEFAULT_API_URL
from models import API_SECRET_NAME


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "dms_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "dms_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    reconcile_interval: int = 5  # seconds between polls
    resync_interval: int = 600  # seconds until an in-sync cluster is rechecked
    max_concurrent_reconciles: int = 5
    retry_delay: int = 30  # requeue hint for retryable failures

    # Exponential backoff configuration
    backoff_base_delay: int = 30
    backoff_max_delay: int = 3600
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "5")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "600")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            retry_delay=int(os.getenv("RETRY_DELAY", "30")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "30")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "3600")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class SnitchConfig:
    """Dead Man's Snitch API and operator secret configuration."""

    api_url: str = DEFAULT_API_URL
    timeout: int = 30
    snitch_interval: str = "15_minute"
    alert_type: str = "basic"
    operator_namespace: str = "deadmanssnitch-operator"
    api_secret_name: str = API_SECRET_NAME

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            api_url=os.getenv("DMS_API_URL", DEFAULT_API_URL),
            timeout=int(os.getenv("DMS_TIMEOUT", "30")),
            snitch_interval=os.getenv("DMS_SNITCH_INTERVAL", "15_minute"),
            alert_type=os.getenv("DMS_ALERT_TYPE", "basic"),
            operator_namespace=os.getenv(
                "DMS_OPERATOR_NAMESPACE", "deadmanssnitch-operator"
            ),
            api_secret_name=os.getenv("DMS_API_SECRET_NAME", API_SECRET_NAME),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    snitch: SnitchConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            snitch=SnitchConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            snitch=SnitchConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
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
