"""Streaming decoder that rebuilds interleaved reasoning and visible text.

The decoder consumes provider chunks one at a time and maintains a single
response buffer in which reasoning segments are wrapped in think markers::

    "\\n<think>weighing options...</think>Here is the answer."

Reasoning and visible segments never overlap: reasoning opens a block if one
is not already open, and the first non-empty visible delta closes it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from ..types import TokenUsage
from .chunks import ChunkKind, StreamChunk, classify_chunk
from .signals import TruncationPolicy
from .tool_calls import ToolCallAccumulator

__all__ = [
    "THINK_OPEN",
    "THINK_CLOSE",
    "DecodedResponse",
    "StreamingDecoder",
    "UpdateCallback",
    "strip_think_blocks",
    "split_reasoning",
]

LOGGER = logging.getLogger(__name__)

THINK_OPEN = "\n<think>"
THINK_CLOSE = "</think>"
_OPEN_TAG = "<think>"
_THINK_BLOCK_RE = re.compile(r"<think>[\s\S]*?</think>")

# Callback invoked with the full response text whenever it changes
UpdateCallback = Callable[[str], None]


@dataclass(slots=True, frozen=True)
class DecodedResponse:
    """Result of :meth:`StreamingDecoder.close`."""

    content: str
    was_truncated: bool = False
    token_usage: TokenUsage | None = None
    warnings: tuple[str, ...] = ()

    @property
    def visible_text(self) -> str:
        return strip_think_blocks(self.content)


def strip_think_blocks(text: str) -> str:
    """Remove every complete think block from ``text``."""

    if not text:
        return ""
    return _THINK_BLOCK_RE.sub("", text).strip()


def split_reasoning(text: str) -> tuple[str, str]:
    """Return ``(reasoning, visible)`` for a decoded response."""

    reasoning = "\n".join(
        match.group(0)[len(_OPEN_TAG) : -len(THINK_CLOSE)].strip()
        for match in _THINK_BLOCK_RE.finditer(text or "")
    )
    return reasoning, strip_think_blocks(text)


class StreamingDecoder:
    """Consumes provider chunks and maintains the accumulated response.

    Args:
        on_update: Called with the full response text each time it changes.
        exclude_thinking: Drop reasoning content entirely.
        truncation_policy: Optional early cut-off policy; once it trips the
            decoder stops accepting chunks.
        accumulator: Receives tool-call fragments carried by chunks.
    """

    def __init__(
        self,
        on_update: UpdateCallback | None = None,
        *,
        exclude_thinking: bool = False,
        truncation_policy: TruncationPolicy | None = None,
        accumulator: ToolCallAccumulator | None = None,
    ) -> None:
        self._on_update = on_update
        self._exclude_thinking = exclude_thinking
        self._policy = truncation_policy
        self._accumulator = accumulator
        self._response = ""
        self._in_think = False
        self._seen_delta_reasoning = False
        self._was_truncated = False
        self._stopped = False
        self._usage: TokenUsage | None = None
        self._warnings: list[str] = []
        self._result: DecodedResponse | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def content(self) -> str:
        return self._response

    @property
    def in_reasoning(self) -> bool:
        return self._in_think

    @property
    def was_truncated(self) -> bool:
        return self._was_truncated

    @property
    def token_usage(self) -> TokenUsage | None:
        return self._usage

    @property
    def stopped(self) -> bool:
        """Whether the early-truncation policy halted the stream."""
        return self._stopped

    @property
    def closed(self) -> bool:
        return self._result is not None

    @property
    def accumulator(self) -> ToolCallAccumulator | None:
        return self._accumulator

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------
    def process_chunk(self, raw: Any) -> None:
        if self._result is not None or self._stopped:
            return

        chunk = classify_chunk(raw)
        if chunk.truncated:
            self._was_truncated = True
        if chunk.usage is not None:
            self._usage = chunk.usage
        if chunk.tool_calls and self._accumulator is not None:
            self._accumulator.ingest_many(chunk.tool_calls)

        before = self._response
        self._apply(chunk)

        if self._policy is not None and self._policy.should_truncate(self._response):
            self._halt()

        if self._response != before:
            self._notify()

    def _apply(self, chunk: StreamChunk) -> None:
        kind = chunk.kind
        if kind is ChunkKind.CLAUDE:
            for part in chunk.parts:
                if part.type == "thinking":
                    self._append_reasoning(part.text, force_open=True)
                else:
                    self._append_text(part.text)
        elif kind is ChunkKind.OPENROUTER:
            if chunk.reasoning:
                self._seen_delta_reasoning = True
                self._append_reasoning(chunk.reasoning)
            elif chunk.reasoning_details and not self._seen_delta_reasoning:
                # Complete transcript from models that never stream deltas.
                self._append_reasoning(chunk.reasoning_details)
            self._append_text(chunk.text)
        elif kind in (ChunkKind.DEEPSEEK, ChunkKind.OLLAMA):
            if chunk.reasoning:
                self._append_reasoning(chunk.reasoning)
            self._append_text(chunk.text)
        else:
            self._append_text(chunk.text)

    def _append_reasoning(self, text: str, *, force_open: bool = False) -> None:
        if self._exclude_thinking:
            return
        if not text and not force_open:
            return
        if not self._in_think:
            self._response += THINK_OPEN
            self._in_think = True
        self._response += text

    def _append_text(self, text: str) -> None:
        if not text:
            return
        if self._in_think:
            self._response += THINK_CLOSE
            self._in_think = False
        self._response += text

    def _halt(self) -> None:
        if self._policy is None:
            return
        trimmed = self._policy.trim(self._response)
        LOGGER.debug(
            "Early truncation tripped; trimming response from %d to %d characters",
            len(self._response),
            len(trimmed),
        )
        self._response = trimmed
        self._in_think = self._response.rfind(_OPEN_TAG) > self._response.rfind(THINK_CLOSE)
        self._was_truncated = True
        self._stopped = True

    def _notify(self) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(self._response)
        except Exception:
            LOGGER.debug("Decoder update callback raised exception", exc_info=True)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    def close(self) -> DecodedResponse:
        """Finish the stream and return the repaired response.

        Calling ``close`` more than once returns the same result.
        """

        if self._result is not None:
            return self._result

        if self._in_think:
            self._response += THINK_CLOSE
            self._in_think = False

        unclosed = self._response.count(_OPEN_TAG) - self._response.count(THINK_CLOSE)
        if unclosed > 0:
            self._response += THINK_CLOSE * unclosed
            message = "Response ended inside an unterminated think block; closed it"
            self._warnings.append(message)
            LOGGER.warning(message)

        if self._response.count(THINK_CLOSE) > self._response.count(_OPEN_TAG):
            self._response = THINK_OPEN + self._response
            message = "Response contained a closing think marker without an opening marker; repaired"
            self._warnings.append(message)
            LOGGER.warning(message)

        self._result = DecodedResponse(
            content=self._response,
            was_truncated=self._was_truncated,
            token_usage=self._usage,
            warnings=tuple(self._warnings),
        )
        return self._result
