"""
Configuration module for the Vault Transit Unseal Operator.

Loads configuration from environment variables. The resulting ``Config`` is
built once at startup and handed to every component constructor; it is
immutable afterwards.
"""

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL object store configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "vault_unseal_operator"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

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
            database=os.getenv("DB_NAME", "vault_unseal_operator"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass(frozen=True)
class OperatorConfig:
    """Reconciliation loop configuration."""

    enable_tls_validation: bool = True
    default_vault_timeout: float = 30.0  # seconds

    # Retry scheduling bounds
    min_backoff: float = 30.0
    max_backoff: float = 300.0

    max_concurrent_reconciles: int = 3

    # Config errors escalate to permanent after this many attempts (0 = never)
    config_error_max_attempts: int = 10

    watch_interval: float = 5.0
    resync_interval: float = 300.0
    fetch_timeout: float = 10.0

    # Delegate plugin name; empty selects the only registered delegate
    delegate: str = ""

    def __post_init__(self):
        if self.min_backoff <= 0:
            raise ValueError("min_backoff must be greater than zero")
        if self.max_backoff < self.min_backoff:
            raise ValueError("max_backoff must not be lower than min_backoff")
        if self.max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be at least 1")
        if self.config_error_max_attempts < 0:
            raise ValueError("config_error_max_attempts cannot be negative")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enable_tls_validation=_env_bool("ENABLE_TLS_VALIDATION", "true"),
            default_vault_timeout=float(os.getenv("VAULT_TIMEOUT", "30")),
            min_backoff=float(os.getenv("MIN_BACKOFF", "30")),
            max_backoff=float(os.getenv("MAX_BACKOFF", "300")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "3")),
            config_error_max_attempts=int(
                os.getenv("CONFIG_ERROR_MAX_ATTEMPTS", "10")
            ),
            watch_interval=float(os.getenv("WATCH_INTERVAL", "5")),
            resync_interval=float(os.getenv("RESYNC_INTERVAL", "300")),
            fetch_timeout=float(os.getenv("FETCH_TIMEOUT", "10")),
            delegate=os.getenv("DELEGATE", ""),
        )


@dataclass(frozen=True)
class HealthConfig:
    """Health probe and HTTP server configuration."""

    vault_address: str = "http://vault:8200"
    host: str = "0.0.0.0"
    port: int = 8081
    probe_timeout: float = 5.0

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            vault_address=os.getenv("VAULT_ADDR", "http://vault:8200"),
            host=os.getenv("HEALTH_HOST", "0.0.0.0"),
            port=int(os.getenv("HEALTH_PORT", "8081")),
            probe_timeout=float(os.getenv("HEALTH_PROBE_TIMEOUT", "5")),
        )


@dataclass(frozen=True)
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    operator: OperatorConfig
    health: HealthConfig
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            operator=OperatorConfig.from_env(),
            health=HealthConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            operator=OperatorConfig(),
            health=HealthConfig(),
        )
