"""Tests for logging setup and opt-in telemetry."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import SimpleNamespace

import pytest

from wayfinder.utils import logging as logging_utils
from wayfinder.utils import telemetry


def test_setup_logging_creates_rotating_file(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"

    log_path = logging_utils.setup_logging(
        level="info",
        log_dir=log_dir,
        console=False,
        force=True,
    )

    logger = logging_utils.get_logger("wayfinder.tests")
    logger.info("Logging smoke test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == log_dir / "wayfinder.log"
    assert logging_utils.get_log_path() == log_path
    assert "Logging smoke test" in log_path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_idempotent(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "one", console=False, force=True)
    second = logging_utils.setup_logging(log_dir=tmp_path / "two", console=False)
    assert second == first


def test_setup_logging_respects_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WAYFINDER_LOG_DIR", str(tmp_path / "env-logs"))
    log_path = logging_utils.setup_logging(console=False, force=True)
    assert log_path.parent == tmp_path / "env-logs"


def test_telemetry_client_flushes_events(tmp_path: Path) -> None:
    storage_dir = tmp_path / "telemetry"
    client = telemetry.TelemetryClient(enabled=True, storage_dir=storage_dir)

    client.track_event("agent.run_started", source=Path("notes/a.md"))
    output_path = client.flush()

    assert output_path == storage_dir / "telemetry.jsonl"
    body = output_path.read_text(encoding="utf-8").strip().splitlines()
    assert len(body) == 1
    event = json.loads(body[0])
    assert event["name"] == "agent.run_started"
    assert event["properties"]["source"] == str(Path("notes/a.md"))
    assert event["session_id"] == client.session_id
    assert client.pending_events() == 0


def test_telemetry_flushes_when_buffer_fills(tmp_path: Path) -> None:
    client = telemetry.TelemetryClient(enabled=True, storage_dir=tmp_path, max_buffer=2)
    client.track_event("one")
    assert client.pending_events() == 1
    client.track_event("two")
    assert client.pending_events() == 0
    assert len((tmp_path / "telemetry.jsonl").read_text(encoding="utf-8").splitlines()) == 2


def test_disabled_telemetry_records_nothing(tmp_path: Path) -> None:
    sink = telemetry.InMemoryTelemetrySink()
    client = telemetry.TelemetryClient(enabled=False, storage_dir=tmp_path, sink=sink)

    client.track_event("ignored")

    assert len(sink) == 0
    assert client.flush() is None
    assert not (tmp_path / "telemetry.jsonl").exists()


def test_in_memory_sink_keeps_latest_events() -> None:
    sink = telemetry.InMemoryTelemetrySink(capacity=10)
    client = telemetry.TelemetryClient(enabled=True, sink=sink, max_buffer=1000)
    for index in range(12):
        client.track_event(f"event.{index}")

    assert len(sink) == 10
    assert sink.names()[0] == "event.2"
    assert [event.name for event in sink.tail(2)] == ["event.10", "event.11"]


def test_telemetry_enabled_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WAYFINDER_TELEMETRY", "true")
    assert telemetry.telemetry_enabled(settings=None)

    monkeypatch.setenv("WAYFINDER_TELEMETRY", "0")
    assert not telemetry.telemetry_enabled(SimpleNamespace(telemetry_opt_in=True))


def test_telemetry_enabled_follows_settings() -> None:
    assert telemetry.telemetry_enabled(SimpleNamespace(telemetry_opt_in=True))
    assert not telemetry.telemetry_enabled(SimpleNamespace(telemetry_opt_in=False))
    assert not telemetry.telemetry_enabled()
