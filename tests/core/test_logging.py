"""Tests for structured logging module."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest
import structlog

from koordi.core.logging import (
    _NOISE_LOGGERS,
    _sync_scope,
    add_otel_context,
    add_sync_scope,
    configure_logging,
    get_sync_scope,
    sync_scope,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and sync scope between tests."""
    token = _sync_scope.set(None)
    yield
    _sync_scope.reset(token)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    # Clear file handlers leaked onto noise loggers
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


# ---------------------------------------------------------------------------
# sync_scope()
# ---------------------------------------------------------------------------


class TestSyncScope:
    def test_default_is_empty(self):
        assert get_sync_scope() == {}

    def test_nested_scopes_extend_and_restore(self):
        with sync_scope(calendar_id="cal-1"):
            with sync_scope(event_id="ev-1", user_id=None):
                assert get_sync_scope() == {"calendar_id": "cal-1", "event_id": "ev-1"}
            assert get_sync_scope() == {"calendar_id": "cal-1"}
        assert get_sync_scope() == {}

    async def test_scopes_do_not_leak_between_tasks(self):
        seen: dict[str, dict[str, str]] = {}

        async def worker(user_id: str) -> None:
            with sync_scope(user_id=user_id):
                await asyncio.sleep(0)
                seen[user_id] = get_sync_scope()

        await asyncio.gather(worker("a"), worker("b"))

        assert seen == {"a": {"user_id": "a"}, "b": {"user_id": "b"}}


class TestAddSyncScope:
    def test_injects_scope_ids(self):
        with sync_scope(calendar_id="cal-1"):
            result = add_sync_scope(None, "info", {"event": "test"})
        assert result["calendar_id"] == "cal-1"

    def test_explicit_keys_win(self):
        with sync_scope(calendar_id="cal-1"):
            result = add_sync_scope(None, "info", {"event": "test", "calendar_id": "other"})
        assert result["calendar_id"] == "other"


# ---------------------------------------------------------------------------
# add_otel_context processor
# ---------------------------------------------------------------------------


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        """No active OTel span: injects zeroed trace_id and span_id."""
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguration_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in ("httpx", "httpcore", "asyncpg"):
            assert logging.getLogger(name).level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG


# ---------------------------------------------------------------------------
# Log directory structure
# ---------------------------------------------------------------------------


class TestLogDirectoryStructure:
    def test_creates_subdirectories(self, tmp_path: Path):
        configure_logging(log_root=tmp_path / "logs", name="worker")
        assert (tmp_path / "logs" / "koordi").is_dir()
        assert (tmp_path / "logs" / "http").is_dir()

    def test_http_loggers_write_to_http_dir(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, name="worker")
        handlers = [
            h for h in logging.getLogger("httpx").handlers if isinstance(h, logging.FileHandler)
        ]
        assert len(handlers) == 1
        assert str(handlers[0].baseFilename).endswith("http/worker.log")

    def test_json_output_carries_scope(self, tmp_path: Path):
        configure_logging(fmt="json", log_root=tmp_path, name="jsontest")
        with sync_scope(calendar_id="cal-7"):
            logging.getLogger("koordi.test").warning("hello structured world")

        content = (tmp_path / "koordi" / "jsontest.log").read_text().strip()
        data = json.loads(content.splitlines()[-1])
        assert data["event"] == "hello structured world"
        assert data["calendar_id"] == "cal-7"
        assert data["level"] == "warning"
