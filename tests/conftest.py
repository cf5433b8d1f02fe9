"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from wayfinder.ai.types import SourceEntry


@pytest.fixture
def sample_sources() -> list[SourceEntry]:
    return [
        SourceEntry(title="Piano Lessons", path="notes/piano-lessons.md", score=0.92),
        SourceEntry(title="Practice Log", path="notes/practice-log.md", score=0.81),
        SourceEntry(title="Studio Schedule", path="notes/studio-schedule.md", score=0.44),
    ]


@pytest.fixture
def search_documents() -> list[dict]:
    return [
        {
            "title": "Piano Lessons",
            "path": "notes/piano-lessons.md",
            "content": "Lessons are held at Dolce Arts Studio every Wednesday.",
            "score": 0.92,
            "mtime": 1_710_288_000_000,
            "includeInContext": True,
        },
        {
            "title": "Practice Log",
            "path": "notes/practice-log.md",
            "content": "Practiced scales for 30 minutes.",
            "score": 0.81,
            "includeInContext": True,
        },
        {
            "title": "Archived Plan",
            "path": "notes/archive/plan.md",
            "content": "Old plan that should stay out of the context window.",
            "score": 0.2,
            "includeInContext": False,
        },
    ]


@pytest.fixture(autouse=True)
def _isolate_wayfinder_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "WAYFINDER_API_KEY",
        "WAYFINDER_MODEL",
        "WAYFINDER_BASE_URL",
        "WAYFINDER_SECRET_KEY",
        "WAYFINDER_TELEMETRY",
        "WAYFINDER_TELEMETRY_DIR",
        "WAYFINDER_LOG_DIR",
        "WAYFINDER_MAX_ITERATIONS",
    ):
        monkeypatch.delenv(name, raising=False)
