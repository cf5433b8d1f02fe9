"""Response finalization, transcript persistence and error rendering."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from ..errors import format_error_for_user
from ..types import SourceEntry, TokenUsage
from .cancellation import CancellationSignal
from .reasoning import strip_reasoning_marker

__all__ = [
    "TRUNCATED_EMPTY_DISPLAY",
    "TRUNCATED_EMPTY_STORED",
    "INTERRUPTED_NOTICE",
    "TranscriptEntry",
    "TranscriptStore",
    "InMemoryTranscriptStore",
    "FinalizedResponse",
    "finalize_response",
    "render_error",
    "append_interrupted_notice",
]

LOGGER = logging.getLogger(__name__)

TRUNCATED_EMPTY_DISPLAY = (
    "_[The response was truncated before any content could be generated. "
    "Try increasing the max tokens limit.]_"
)
TRUNCATED_EMPTY_STORED = "[Response truncated - no content generated]"
INTERRUPTED_NOTICE = "_[Response interrupted]_"
_MAX_LOGGED_RESPONSE = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class TranscriptEntry:
    """One persisted input/output exchange."""

    user_message: str
    response: str
    sources: tuple[SourceEntry, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.user_message,
            "output": self.response,
            "sources": [
                {"title": source.title, "path": source.path, "score": source.score}
                for source in self.sources
            ],
            "created_at": self.created_at.isoformat(),
        }


@runtime_checkable
class TranscriptStore(Protocol):
    """Long-term storage for reconciled exchanges. Always receives plain text."""

    async def save(self, entry: TranscriptEntry) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTranscriptStore:
    """Transcript store that keeps entries in a list; used for tests and embedding."""

    def __init__(self) -> None:
        self.entries: list[TranscriptEntry] = []

    async def save(self, entry: TranscriptEntry) -> None:
        self.entries.append(entry)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(slots=True, frozen=True)
class FinalizedResponse:
    """What the caller displays once a run is over."""

    display_text: str
    stored_text: str | None
    persisted: bool
    sources: tuple[SourceEntry, ...] = ()
    was_truncated: bool = False
    token_usage: TokenUsage | None = None


async def finalize_response(
    response: str,
    *,
    user_message: str,
    signal: CancellationSignal | None,
    store: TranscriptStore | None,
    sources: Sequence[SourceEntry] = (),
    was_truncated: bool = False,
    token_usage: TokenUsage | None = None,
    stored_text: str | None = None,
) -> FinalizedResponse:
    """Reconcile the final text and persist the exchange.

    Nothing is persisted when the run was aborted for a new conversation.
    An empty response is only kept when it was truncated, in which case a
    placeholder is shown and stored instead.
    """

    sources = tuple(sources)
    if signal is not None and signal.suppresses_persistence:
        LOGGER.debug("Skipping persistence for run aborted by a new chat")
        return FinalizedResponse(
            display_text="",
            stored_text=None,
            persisted=False,
            sources=sources,
            was_truncated=was_truncated,
            token_usage=token_usage,
        )

    if not response and not was_truncated:
        return FinalizedResponse(
            display_text="",
            stored_text=None,
            persisted=False,
            sources=sources,
            token_usage=token_usage,
        )

    display = response or TRUNCATED_EMPTY_DISPLAY
    output = stored_text or strip_reasoning_marker(response) or TRUNCATED_EMPTY_STORED
    persisted = False
    if store is not None:
        await store.save(TranscriptEntry(user_message=user_message, response=output, sources=sources))
        persisted = True

    snippet = output if len(output) <= _MAX_LOGGED_RESPONSE else output[:_MAX_LOGGED_RESPONSE] + "... (truncated)"
    LOGGER.info("Final response (%d chars, truncated=%s): %s", len(output), was_truncated, snippet)
    return FinalizedResponse(
        display_text=display,
        stored_text=output,
        persisted=persisted,
        sources=sources,
        was_truncated=was_truncated,
        token_usage=token_usage,
    )


def render_error(exc: BaseException, emit: Callable[[str], None] | None = None) -> str:
    """Log ``exc`` and return (and optionally emit) its user-facing message."""

    message = format_error_for_user(exc)
    LOGGER.error("Error during model invocation: %s", exc)
    if emit is not None:
        try:
            emit(message)
        except Exception:
            LOGGER.debug("Error emit callback raised exception", exc_info=True)
    return message


def append_interrupted_notice(text: str) -> str:
    if not text.strip():
        return INTERRUPTED_NOTICE
    return f"{text}\n\n{INTERRUPTED_NOTICE}"
