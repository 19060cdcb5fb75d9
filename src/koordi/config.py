"""Koordi configuration loading and validation.

Reads koordi.toml from a config directory, parses all sections, and returns
a validated KoordiConfig dataclass. Secrets (encryption key, OAuth client,
maps API key, database credentials) never live in the file; they are read
from the environment, either directly or through ``${VAR}`` references.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from koordi.errors import ConfigurationError

CONFIG_FILENAME = "koordi.toml"

ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"
GOOGLE_OAUTH_CLIENT_ID_ENV = "GOOGLE_OAUTH_CLIENT_ID"
GOOGLE_OAUTH_CLIENT_SECRET_ENV = "GOOGLE_OAUTH_CLIENT_SECRET"
GOOGLE_MAPS_API_KEY_ENV = "GOOGLE_MAPS_API_KEY"

# Pattern matching ${VAR_NAME}: supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(ConfigurationError):
    """Raised when koordi configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [koordi.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class FeedConfig:
    """Upstream ICS feed fetch limits from [koordi.feed]."""

    timeout_seconds: float = 10.0
    max_redirects: int = 5
    user_agent: str = "Koordi/1.0"


@dataclass
class SyncConfig:
    """External mirror and advisory-flag settings from [koordi.sync].

    user_timeout_seconds bounds each per-user branch of a mirror fan-out.
    stale_lock_seconds is how long a calendar's sync flag may be held before
    a later reconciliation treats it as abandoned and takes it over.
    """

    user_timeout_seconds: float = 30.0
    stale_lock_seconds: int = 600
    default_timezone: str = "America/Los_Angeles"


@dataclass
class SupplementalConfig:
    """Travel-window planning settings from [koordi.supplemental]."""

    conflict_estimate_minutes: int = 30
    max_arrival_lead_minutes: int = 120


@dataclass
class KoordiConfig:
    """Parsed and validated koordi configuration."""

    name: str = "koordi"
    db_name: str = "koordi"
    db_schema: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    supplemental: SupplementalConfig = field(default_factory=SupplementalConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _positive_number(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{path}.{key} must be a number, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"{path}.{key} must be positive, got {raw!r}")
    return float(raw)


def _non_negative_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"{path}.{key} must be an integer, got {raw!r}")
    if raw < 0:
        raise ConfigError(f"{path}.{key} must not be negative, got {raw!r}")
    return raw


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid koordi.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    log_root = section.get("log_root")
    return LoggingConfig(
        level=level,
        format=log_format,
        log_root=str(log_root) if log_root else None,
    )


def _parse_feed(section: dict[str, Any]) -> FeedConfig:
    user_agent = str(section.get("user_agent", FeedConfig.user_agent)).strip()
    if not user_agent:
        raise ConfigError("koordi.feed.user_agent must be a non-empty string")
    return FeedConfig(
        timeout_seconds=_positive_number(section, "timeout_seconds", 10.0, "koordi.feed"),
        max_redirects=_non_negative_int(section, "max_redirects", 5, "koordi.feed"),
        user_agent=user_agent,
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

    default_timezone = str(section.get("default_timezone", SyncConfig.default_timezone)).strip()
    try:
        ZoneInfo(default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(
            f"Invalid koordi.sync.default_timezone: {default_timezone!r}"
        ) from exc
    return SyncConfig(
        user_timeout_seconds=_positive_number(
            section, "user_timeout_seconds", 30.0, "koordi.sync"
        ),
        stale_lock_seconds=_non_negative_int(section, "stale_lock_seconds", 600, "koordi.sync"),
        default_timezone=default_timezone,
    )


def _parse_supplemental(section: dict[str, Any]) -> SupplementalConfig:
    return SupplementalConfig(
        conflict_estimate_minutes=_non_negative_int(
            section, "conflict_estimate_minutes", 30, "koordi.supplemental"
        ),
        max_arrival_lead_minutes=_non_negative_int(
            section, "max_arrival_lead_minutes", 120, "koordi.supplemental"
        ),
    )


def parse_config(data: dict[str, Any]) -> KoordiConfig:
    """Validate an already-decoded TOML document into a :class:`KoordiConfig`."""
    data = resolve_env_vars(data)

    koordi_section = data.get("koordi", {})
    if not isinstance(koordi_section, dict):
        raise ConfigError("[koordi] must be a table")

    name = str(koordi_section.get("name", "koordi")).strip()
    if not name:
        raise ConfigError("koordi.name must be a non-empty string")

    db_section = koordi_section.get("db", {})
    db_name = str(db_section.get("name", name)).strip()
    if not db_name:
        raise ConfigError("koordi.db.name must be a non-empty string")

    db_schema_raw = db_section.get("schema")
    db_schema: str | None = None
    if db_schema_raw is not None:
        if not isinstance(db_schema_raw, str):
            raise ConfigError("koordi.db.schema must be a string when set")
        normalized_schema = db_schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized_schema) is None:
            raise ConfigError(
                "Invalid koordi.db.schema: "
                f"{db_schema_raw!r}. Expected a valid SQL identifier-style value."
            )
        db_schema = normalized_schema

    return KoordiConfig(
        name=name,
        db_name=db_name,
        db_schema=db_schema,
        logging=_parse_logging(koordi_section.get("logging", {})),
        feed=_parse_feed(koordi_section.get("feed", {})),
        sync=_parse_sync(koordi_section.get("sync", {})),
        supplemental=_parse_supplemental(koordi_section.get("supplemental", {})),
    )


def load_config(config_dir: Path) -> KoordiConfig:
    """Load and validate a koordi.toml from *config_dir*.

    A missing file is an error; an empty file yields all defaults.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)


def require_env(name: str) -> str:
    """Return a required secret from the environment or raise ConfigError."""
    value = os.environ.get(name, "").strip()
    if not value:
        raise ConfigError(f"Required environment variable {name} is not set")
    return value
