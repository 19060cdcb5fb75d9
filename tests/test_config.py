"""Tests for koordi configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from koordi.config import (
    ConfigError,
    KoordiConfig,
    load_config,
    parse_config,
    require_env,
    resolve_env_vars,
)
from koordi.errors import ConfigurationError

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[koordi]
name = "koordi-prod"

[koordi.db]
name = "koordi_db"
schema = "family"

[koordi.logging]
level = "debug"
format = "JSON"
log_root = "/var/log/koordi"

[koordi.feed]
timeout_seconds = 5
max_redirects = 2
user_agent = "Koordi-Test/2.0"

[koordi.sync]
user_timeout_seconds = 12.5
stale_lock_seconds = 300
default_timezone = "America/New_York"

[koordi.supplemental]
conflict_estimate_minutes = 45
max_arrival_lead_minutes = 90
"""


def _write_toml(tmp_path: Path, content: str) -> Path:
    """Write *content* to koordi.toml inside *tmp_path* and return the directory."""
    (tmp_path / "koordi.toml").write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


def test_load_full_config(tmp_path: Path):
    config = load_config(_write_toml(tmp_path, FULL_TOML))

    assert config.name == "koordi-prod"
    assert config.db_name == "koordi_db"
    assert config.db_schema == "family"
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"
    assert config.logging.log_root == "/var/log/koordi"
    assert config.feed.timeout_seconds == 5.0
    assert config.feed.max_redirects == 2
    assert config.feed.user_agent == "Koordi-Test/2.0"
    assert config.sync.user_timeout_seconds == 12.5
    assert config.sync.stale_lock_seconds == 300
    assert config.sync.default_timezone == "America/New_York"
    assert config.supplemental.conflict_estimate_minutes == 45
    assert config.supplemental.max_arrival_lead_minutes == 90


def test_empty_file_yields_defaults(tmp_path: Path):
    config = load_config(_write_toml(tmp_path, ""))

    assert config == KoordiConfig()
    assert config.sync.user_timeout_seconds == 30.0
    assert config.sync.stale_lock_seconds == 600
    assert config.supplemental.conflict_estimate_minutes == 30


def test_db_name_defaults_to_service_name():
    config = parse_config({"koordi": {"name": "family"}})
    assert config.db_name == "family"


# ---------------------------------------------------------------------------
# Error cases
# ---------------------------------------------------------------------------


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path)


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write_toml(tmp_path, "[koordi\nname ="))


def test_config_error_is_a_configuration_error():
    assert issubclass(ConfigError, ConfigurationError)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"koordi": "nope"}, r"\[koordi\] must be a table"),
        ({"koordi": {"name": "  "}}, "koordi.name"),
        ({"koordi": {"db": {"schema": "bad-schema"}}}, "Invalid koordi.db.schema"),
        ({"koordi": {"db": {"schema": 3}}}, "must be a string"),
        ({"koordi": {"logging": {"format": "xml"}}}, "Invalid koordi.logging.format"),
        ({"koordi": {"feed": {"timeout_seconds": 0}}}, "must be positive"),
        ({"koordi": {"feed": {"timeout_seconds": "fast"}}}, "must be a number"),
        ({"koordi": {"feed": {"max_redirects": -1}}}, "must not be negative"),
        ({"koordi": {"feed": {"user_agent": ""}}}, "user_agent"),
        ({"koordi": {"sync": {"user_timeout_seconds": True}}}, "must be a number"),
        ({"koordi": {"sync": {"stale_lock_seconds": 1.5}}}, "must be an integer"),
        ({"koordi": {"sync": {"default_timezone": "Mars/Olympus"}}}, "default_timezone"),
        ({"koordi": {"supplemental": {"conflict_estimate_minutes": -5}}}, "not be negative"),
    ],
)
def test_invalid_values(data, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(data)


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------


class TestEnvVars:
    def test_resolves_nested_references(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("KOORDI_DB", "from_env")
        resolved = resolve_env_vars(
            {"db": {"name": "${KOORDI_DB}"}, "tags": ["x-${KOORDI_DB}"], "port": 5432}
        )
        assert resolved == {"db": {"name": "from_env"}, "tags": ["x-from_env"], "port": 5432}

    def test_reports_every_missing_variable(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("KOORDI_MISSING_A", raising=False)
        monkeypatch.delenv("KOORDI_MISSING_B", raising=False)
        with pytest.raises(ConfigError, match="KOORDI_MISSING_A, KOORDI_MISSING_B"):
            resolve_env_vars("${KOORDI_MISSING_A}/${KOORDI_MISSING_B}")

    def test_config_values_are_resolved(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.setenv("KOORDI_TZ", "Europe/Berlin")
        config = load_config(
            _write_toml(tmp_path, '[koordi.sync]\ndefault_timezone = "${KOORDI_TZ}"\n')
        )
        assert config.sync.default_timezone == "Europe/Berlin"

    def test_require_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "  abc  ")
        assert require_env("GOOGLE_MAPS_API_KEY") == "abc"

        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "   ")
        with pytest.raises(ConfigError, match="GOOGLE_MAPS_API_KEY"):
            require_env("GOOGLE_MAPS_API_KEY")
