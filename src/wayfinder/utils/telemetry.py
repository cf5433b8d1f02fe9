"""Opt-in event telemetry for agent runs.

Events are buffered in memory and flushed as JSON lines to
``~/.wayfinder/telemetry/telemetry.jsonl`` when telemetry is enabled. An
optional sink receives every event as it is tracked, which is how tests and
local tooling observe runs without touching disk.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Protocol

__all__ = [
    "TelemetryClient",
    "TelemetryEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "telemetry_enabled",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_TELEMETRY_DIR = Path.home() / ".wayfinder" / "telemetry"
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(slots=True)
class TelemetryEvent:
    """A single event prior to serialization."""

    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def serialize(self, session_id: str) -> str:
        payload = {
            "session_id": session_id,
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
            "properties": self.properties,
        }
        return json.dumps(payload, default=_json_default, ensure_ascii=False)


class TelemetrySink(Protocol):
    def record(self, event: TelemetryEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Ring-buffer sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TelemetryEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: TelemetryEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[TelemetryEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def names(self) -> list[str]:
        return [event.name for event in self.tail()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


@dataclass(slots=True)
class TelemetryClient:
    """Buffers events and flushes them as JSONL to disk when enabled."""

    enabled: bool = False
    storage_dir: Path | str | None = None
    max_buffer: int = 32
    sink: TelemetrySink | None = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    _buffer: list[TelemetryEvent] = field(default_factory=list, init=False, repr=False)

    def track_event(self, name: str, **props: Any) -> None:
        """Record an event if telemetry is enabled."""

        if not self.enabled:
            return
        event = TelemetryEvent(name=name, properties=_sanitize_props(props))
        if self.sink is not None:
            try:
                self.sink.record(event)
            except Exception:  # pragma: no cover - sink failures are non-fatal
                LOGGER.debug("Telemetry sink raised exception", exc_info=True)
        self._buffer.append(event)
        if len(self._buffer) >= self.max_buffer:
            self.flush()

    def flush(self) -> Path | None:
        """Persist buffered events to disk and clear the buffer."""

        if not self.enabled or not self._buffer:
            return None

        target_dir = _resolve_storage_dir(self.storage_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        log_path = target_dir / "telemetry.jsonl"
        with log_path.open("a", encoding="utf-8") as handle:
            for event in self._buffer:
                handle.write(event.serialize(self.session_id))
                handle.write("\n")
        self._buffer.clear()
        return log_path

    def pending_events(self) -> int:
        return len(self._buffer)


def telemetry_enabled(settings: Any | None = None) -> bool:
    """Return ``True`` if telemetry should be enabled for the current session.

    ``WAYFINDER_TELEMETRY`` wins over the ``telemetry_opt_in`` setting.
    """

    env_value = os.environ.get("WAYFINDER_TELEMETRY")
    if env_value is not None:
        return env_value.strip().lower() in _TRUE_VALUES
    if settings is None:
        return False
    return bool(getattr(settings, "telemetry_opt_in", False))


def _sanitize_props(props: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    for key, value in props.items():
        if isinstance(value, Path):
            sanitized[key] = str(value)
        elif isinstance(value, datetime):
            sanitized[key] = value.isoformat()
        else:
            sanitized[key] = value
    return sanitized


def _json_default(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value)!r} is not JSON serializable")


def _resolve_storage_dir(storage_dir: Path | str | None) -> Path:
    env_override = os.environ.get("WAYFINDER_TELEMETRY_DIR")
    return Path(storage_dir or env_override or _DEFAULT_TELEMETRY_DIR).expanduser()
