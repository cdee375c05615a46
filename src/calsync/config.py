"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` references against the
environment, validates every section, and returns a :class:`CalsyncConfig`
dataclass.  Every section is optional; an empty file yields the defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from calsync.orchestrator import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_PASS_TIMEOUT_SECONDS,
    SyncDirection,
    SyncSettings,
)
from calsync.providers.outlook import DEFAULT_TENANT
from calsync.resilience import (
    DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_RECOVERY_TIMEOUT_SECONDS,
    BreakerRegistry,
    RetryPolicy,
)

DEFAULT_CONFIG_FILENAME = "calsync.toml"
CONFIG_PATH_ENV = "CALSYNC_CONFIG"

KNOWN_PROVIDERS = ("google", "outlook")

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class SyncConfig:
    """Orchestration settings from the [sync] section."""

    max_workers: int = DEFAULT_MAX_WORKERS
    proximity_window_seconds: float = 300.0
    pass_timeout_seconds: float | None = DEFAULT_PASS_TIMEOUT_SECONDS
    interval_minutes: float = 15.0
    users: list[str] = field(default_factory=list)
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL


@dataclass
class RetryConfig:
    """Backoff settings from the [retry] section."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    attempt_timeout_seconds: float | None = DEFAULT_ATTEMPT_TIMEOUT_SECONDS


@dataclass
class CircuitBreakerConfig:
    """Per-provider breaker settings from the [circuit_breaker] section."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    recovery_timeout_seconds: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS


@dataclass
class TokenConfig:
    safety_margin_seconds: float = 120.0


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    name: str = "calsync"
    schema: str | None = None


@dataclass
class ProviderConfig:
    """OAuth client registration for one provider ([providers.<name>])."""

    name: str
    client_id: str
    client_secret: str
    redirect_uri: str | None = None
    tenant: str | None = None

    def as_settings(self) -> dict[str, str | None]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "tenant": self.tenant,
        }


@dataclass
class CalsyncConfig:
    """Parsed and validated calsync configuration."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    def sync_settings(self) -> SyncSettings:
        return SyncSettings(
            max_workers=self.sync.max_workers,
            proximity_window=timedelta(seconds=self.sync.proximity_window_seconds),
            pass_timeout=self.sync.pass_timeout_seconds,
            direction=self.sync.direction,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            max_delay=self.retry.max_delay_seconds,
            attempt_timeout=self.retry.attempt_timeout_seconds,
        )

    def breaker_registry(self, **kwargs: Any) -> BreakerRegistry:
        return BreakerRegistry(
            failure_threshold=self.circuit_breaker.failure_threshold,
            recovery_timeout=self.circuit_breaker.recovery_timeout_seconds,
            **kwargs,
        )

    def safety_margin(self) -> timedelta:
        return timedelta(seconds=self.tokens.safety_margin_seconds)

    def provider_settings(self) -> dict[str, dict[str, str | None]]:
        return {name: provider.as_settings() for name, provider in self.providers.items()}


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    The original value is not echoed back since it may hold a secret.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _number(
    section: dict[str, Any],
    path: str,
    key: str,
    default: float | None,
    *,
    allow_zero: bool = False,
    allow_none: bool = False,
) -> float | None:
    raw = section.get(key, default)
    if raw is None and allow_none:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.")
    value = float(raw)
    if value < 0 or (value == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be {qualifier}.")
    return value


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    users_raw = section.get("users", [])
    if not isinstance(users_raw, list) or not all(
        isinstance(u, str) and u.strip() for u in users_raw
    ):
        raise ConfigError("sync.users must be a list of non-empty strings")
    # pass_timeout_seconds = 0 disables the pass timeout.
    pass_timeout = _number(
        section,
        "sync",
        "pass_timeout_seconds",
        DEFAULT_PASS_TIMEOUT_SECONDS,
        allow_zero=True,
    )
    direction = str(section.get("direction", SyncDirection.BIDIRECTIONAL)).lower()
    if direction not in tuple(SyncDirection):
        choices = ", ".join(repr(str(d)) for d in SyncDirection)
        raise ConfigError(f"Invalid sync.direction: {direction!r}. Expected one of {choices}.")
    return SyncConfig(
        max_workers=_positive_int(section, "sync", "max_workers", DEFAULT_MAX_WORKERS),
        proximity_window_seconds=_number(
            section, "sync", "proximity_window_seconds", 300.0, allow_zero=True
        ),
        pass_timeout_seconds=pass_timeout or None,
        interval_minutes=_number(section, "sync", "interval_minutes", 15.0),
        users=[u.strip() for u in users_raw],
        direction=SyncDirection(direction),
    )


def _parse_retry(data: dict[str, Any]) -> RetryConfig:
    section = _section(data, "retry")
    config = RetryConfig(
        max_attempts=_positive_int(section, "retry", "max_attempts", DEFAULT_MAX_ATTEMPTS),
        base_delay_seconds=_number(
            section, "retry", "base_delay_seconds", DEFAULT_BASE_DELAY_SECONDS, allow_zero=True
        ),
        max_delay_seconds=_number(
            section, "retry", "max_delay_seconds", DEFAULT_MAX_DELAY_SECONDS, allow_zero=True
        ),
        attempt_timeout_seconds=_number(
            section,
            "retry",
            "attempt_timeout_seconds",
            DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
            allow_none=True,
        ),
    )
    if config.max_delay_seconds < config.base_delay_seconds:
        raise ConfigError("retry.max_delay_seconds must be >= retry.base_delay_seconds")
    return config


def _parse_circuit_breaker(data: dict[str, Any]) -> CircuitBreakerConfig:
    section = _section(data, "circuit_breaker")
    return CircuitBreakerConfig(
        failure_threshold=_positive_int(
            section, "circuit_breaker", "failure_threshold", DEFAULT_FAILURE_THRESHOLD
        ),
        recovery_timeout_seconds=_number(
            section,
            "circuit_breaker",
            "recovery_timeout_seconds",
            DEFAULT_RECOVERY_TIMEOUT_SECONDS,
        ),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=section.get("log_root"),
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    name = str(section.get("name", "calsync")).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")

    schema_raw = section.get("schema")
    schema: str | None = None
    if schema_raw is not None:
        if not isinstance(schema_raw, str):
            raise ConfigError("database.schema must be a string when set")
        schema = schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(schema) is None:
            raise ConfigError(
                f"Invalid database.schema: {schema_raw!r}. "
                "Expected a valid SQL identifier-style value."
            )
    return DatabaseConfig(name=name, schema=schema)


def _parse_providers(data: dict[str, Any]) -> dict[str, ProviderConfig]:
    section = _section(data, "providers")
    providers: dict[str, ProviderConfig] = {}
    for name, entry in section.items():
        path = f"providers.{name}"
        if name not in KNOWN_PROVIDERS:
            raise ConfigError(
                f"Unknown provider {name!r}. Expected one of: {', '.join(KNOWN_PROVIDERS)}"
            )
        if not isinstance(entry, dict):
            raise ConfigError(f"[{path}] must be a TOML table")
        for key in ("client_id", "client_secret"):
            value = entry.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"{path}.{key} must be a non-empty string")
        tenant = entry.get("tenant")
        if name == "outlook" and tenant is None:
            tenant = DEFAULT_TENANT
        providers[name] = ProviderConfig(
            name=name,
            client_id=entry["client_id"].strip(),
            client_secret=entry["client_secret"].strip(),
            redirect_uri=entry.get("redirect_uri"),
            tenant=tenant,
        )
    return providers


def default_config_path() -> Path:
    """``$CALSYNC_CONFIG`` when set, otherwise ``./calsync.toml``."""
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_FILENAME))


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load and validate a calsync TOML file.

    Parameters
    ----------
    path:
        Path to the TOML file; defaults to :func:`default_config_path`.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, references unset
        environment variables, or holds invalid values.
    """
    toml_path = path or default_config_path()
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)
    return CalsyncConfig(
        sync=_parse_sync(data),
        retry=_parse_retry(data),
        circuit_breaker=_parse_circuit_breaker(data),
        tokens=TokenConfig(
            safety_margin_seconds=_number(
                _section(data, "tokens"), "tokens", "safety_margin_seconds", 120.0, allow_zero=True
            )
        ),
        logging=_parse_logging(data),
        database=_parse_database(data),
        providers=_parse_providers(data),
    )
