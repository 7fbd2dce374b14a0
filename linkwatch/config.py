"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Upper bound on the per-request timeout.
MAX_TIMEOUT_MS = 120_000


@dataclass(frozen=True)
class CheckerConfig:
    """Configuration for outbound URL checks.

    timeout_ms and max_redirects are fixed for the lifetime of the process;
    callers cannot tune them per check.
    """

    timeout_ms: int = 10_000
    max_redirects: int = 5
    max_workers: int = 10  # concurrent requests per batch
    user_agent: str = "linkwatch/0.1"

    def __post_init__(self) -> None:
        if not (1 <= self.timeout_ms <= MAX_TIMEOUT_MS):
            raise ConfigError(f"Checker timeout_ms must be between 1 and {MAX_TIMEOUT_MS} (got {self.timeout_ms})")
        if self.max_redirects < 0:
            raise ConfigError(f"Checker max_redirects must be non-negative (got {self.max_redirects})")
        if self.max_workers < 1:
            raise ConfigError(f"Checker max_workers must be at least 1 (got {self.max_workers})")
        if not self.user_agent:
            raise ConfigError("Checker User-Agent cannot be empty")


DEFAULT_DB_PATH = str(Path("data") / "linkwatch.db")


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the SQLite observation store."""

    path: str = DEFAULT_DB_PATH
    max_observations: int = 10_000
    max_batches: int = 1_000
    retention_days: int = 30

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Database path cannot be empty")
        if self.max_observations < 1:
            raise ConfigError("Database max_observations must be at least 1")
        if self.max_batches < 1:
            raise ConfigError("Database max_batches must be at least 1")
        if self.retention_days < 1:
            raise ConfigError("Database retention_days must be at least 1")


@dataclass(frozen=True)
class SweeperConfig:
    """Configuration for the retention sweeper."""

    enabled: bool = True
    interval_hours: float = 24

    def __post_init__(self) -> None:
        if self.interval_hours <= 0:
            raise ConfigError(f"Sweeper interval_hours must be positive (got {self.interval_hours})")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for JSON API server."""

    enabled: bool = True
    port: int = 3000
    max_urls_per_request: int = 10
    max_recent_limit: int = 1000

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")
        if self.max_urls_per_request < 1:
            raise ConfigError("API max_urls_per_request must be at least 1")
        if self.max_recent_limit < 1:
            raise ConfigError("API max_recent_limit must be at least 1")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    checker: CheckerConfig = field(default_factory=CheckerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _section(data: dict, name: str) -> dict | None:
    section = data.get(name)
    if section is not None and not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return section


def _parse_checker_config(data: dict | None) -> CheckerConfig:
    """Parse checker configuration section."""
    if data is None:
        return CheckerConfig()

    return CheckerConfig(
        timeout_ms=int(data.get("timeout_ms", 10_000)),
        max_redirects=int(data.get("max_redirects", 5)),
        max_workers=int(data.get("max_workers", 10)),
        user_agent=str(data.get("user_agent", "linkwatch/0.1")),
    )


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()

    return DatabaseConfig(
        path=str(data.get("path", DEFAULT_DB_PATH)),
        max_observations=int(data.get("max_observations", 10_000)),
        max_batches=int(data.get("max_batches", 1_000)),
        retention_days=int(data.get("retention_days", 30)),
    )


def _parse_sweeper_config(data: dict | None) -> SweeperConfig:
    """Parse sweeper configuration section."""
    if data is None:
        return SweeperConfig()

    return SweeperConfig(
        enabled=bool(data.get("enabled", True)),
        interval_hours=float(data.get("interval_hours", 24)),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()

    return ApiConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 3000)),
        max_urls_per_request=int(data.get("max_urls_per_request", 10)),
        max_recent_limit=int(data.get("max_recent_limit", 1000)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - LINKWATCH_API_PORT: Override api.port
    - LINKWATCH_API_ENABLED: Override api.enabled (true/false)
    - LINKWATCH_DB_PATH: Override database.path
    - LINKWATCH_DB_RETENTION_DAYS: Override database.retention_days
    - LINKWATCH_SWEEPER_INTERVAL_HOURS: Override sweeper.interval_hours
    - LINKWATCH_CHECK_TIMEOUT_MS: Override checker.timeout_ms
    """
    for section in ("checker", "database", "sweeper", "api"):
        if config_data.get(section) is None:
            config_data[section] = {}

    try:
        api_port = os.environ.get("LINKWATCH_API_PORT")
        if api_port is not None:
            config_data["api"]["port"] = int(api_port)

        api_enabled = os.environ.get("LINKWATCH_API_ENABLED")
        if api_enabled is not None:
            config_data["api"]["enabled"] = api_enabled.lower() in ("true", "1", "yes")

        db_path = os.environ.get("LINKWATCH_DB_PATH")
        if db_path is not None:
            config_data["database"]["path"] = db_path

        db_retention = os.environ.get("LINKWATCH_DB_RETENTION_DAYS")
        if db_retention is not None:
            config_data["database"]["retention_days"] = int(db_retention)

        sweeper_interval = os.environ.get("LINKWATCH_SWEEPER_INTERVAL_HOURS")
        if sweeper_interval is not None:
            config_data["sweeper"]["interval_hours"] = float(sweeper_interval)

        check_timeout = os.environ.get("LINKWATCH_CHECK_TIMEOUT_MS")
        if check_timeout is not None:
            config_data["checker"]["timeout_ms"] = int(check_timeout)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")

    return config_data


def load_config(config_path: str | None = None) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file, or None to use
            defaults plus environment overrides.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    data: object = {}

    if config_path is not None:
        path = Path(config_path)

        if not path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}")

        if data is None:
            data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    for name in ("checker", "database", "sweeper", "api"):
        _section(data, name)

    data = _apply_env_overrides(data)

    try:
        return Config(
            checker=_parse_checker_config(data.get("checker")),
            database=_parse_database_config(data.get("database")),
            sweeper=_parse_sweeper_config(data.get("sweeper")),
            api=_parse_api_config(data.get("api")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
