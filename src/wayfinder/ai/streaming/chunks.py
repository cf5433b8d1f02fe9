"""Normalization of provider-specific streaming chunks.

Providers deliver reasoning ("thinking") text through different channels:

* ``claude``: ``content`` is a list of typed parts (``thinking`` / ``text``).
* ``deepseek``: reasoning arrives in ``additional_kwargs.reasoning_content``
  (or ``delta.reasoning_content`` on raw OpenAI-compatible chunks).
* ``openrouter``: reasoning arrives in ``additional_kwargs.delta.reasoning``
  with a trailing ``reasoning_details`` transcript (or ``delta.reasoning`` on
  raw chunks).
* ``ollama``: chunks wrap a ``message`` with ``thinking`` and ``content``.
* ``plain``: ``content`` is a plain string.

:func:`classify_chunk` resolves the shape once per chunk and produces a
:class:`StreamChunk`, so downstream code matches on ``kind`` instead of
probing fields.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Literal, Mapping, Sequence

from ..types import TokenUsage
from .signals import detect_truncation, extract_finish_reason, extract_token_usage

__all__ = [
    "ChunkKind",
    "ContentPart",
    "ToolCallDelta",
    "StreamChunk",
    "classify_chunk",
    "field_value",
]


class ChunkKind(str, Enum):
    """Shape of an upstream chunk."""

    CLAUDE = "claude"
    DEEPSEEK = "deepseek"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    PLAIN = "plain"


@dataclass(slots=True, frozen=True)
class ContentPart:
    """One typed part of a claude-style content list."""

    type: Literal["thinking", "text"]
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """Fragment of a tool call as delivered by a single chunk."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(slots=True, frozen=True)
class StreamChunk:
    """Provider-neutral view of one streaming chunk.

    Attributes:
        kind: The resolved upstream shape.
        text: Visible text delta (may be empty).
        reasoning: Side-channel reasoning delta. ``None`` means the chunk
            carried no reasoning; an empty string is treated the same way.
        parts: Ordered typed parts for claude-style chunks.
        reasoning_details: Complete reasoning transcript sent by some
            OpenRouter models alongside (or after) the streamed deltas.
        tool_calls: Tool-call fragments carried by the chunk.
        finish_reason: Raw finish signal, if any.
        truncated: Whether the chunk signals a length-limited completion.
        usage: Token usage totals when present.
    """

    kind: ChunkKind
    text: str = ""
    reasoning: str | None = None
    parts: tuple[ContentPart, ...] = ()
    reasoning_details: str | None = None
    tool_calls: tuple[ToolCallDelta, ...] = ()
    finish_reason: str | None = None
    truncated: bool = False
    usage: TokenUsage | None = None

    @property
    def has_reasoning(self) -> bool:
        if self.kind is ChunkKind.CLAUDE:
            return any(part.type == "thinking" for part in self.parts)
        return bool(self.reasoning)


# -----------------------------------------------------------------------------
# Field access
# -----------------------------------------------------------------------------


def field_value(source: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a mapping or an attribute-style object."""

    if source is None:
        return default
    if isinstance(source, Mapping):
        return source.get(name, default)
    value = getattr(source, name, None)
    if value is not None:
        return value
    extra = getattr(source, "model_extra", None)
    if isinstance(extra, Mapping):
        return extra.get(name, default)
    return default


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------


def classify_chunk(raw: Any) -> StreamChunk:
    """Resolve the shape of ``raw`` and normalize it into a :class:`StreamChunk`."""

    if isinstance(raw, StreamChunk):
        return raw
    if isinstance(raw, str):
        return StreamChunk(kind=ChunkKind.PLAIN, text=raw)

    finish_reason = extract_finish_reason(raw)
    common = {
        "finish_reason": finish_reason,
        "truncated": detect_truncation(raw),
        "usage": extract_token_usage(raw),
    }

    choices = field_value(raw, "choices")
    if _is_sequence(choices):
        return _classify_completion_chunk(choices, common)

    message = field_value(raw, "message")
    if message is not None and not isinstance(message, str):
        return StreamChunk(
            kind=ChunkKind.OLLAMA,
            text=_as_text(field_value(message, "content")),
            reasoning=_as_text(field_value(message, "thinking")) or None,
            tool_calls=_tool_call_deltas(field_value(message, "tool_calls")),
            **common,
        )

    content = field_value(raw, "content")
    tool_calls = _tool_call_deltas(
        field_value(raw, "tool_call_chunks") or field_value(raw, "tool_calls")
    )
    if _is_sequence(content):
        return StreamChunk(
            kind=ChunkKind.CLAUDE,
            parts=_content_parts(content),
            tool_calls=tool_calls,
            **common,
        )

    text = _as_text(content)
    extras = field_value(raw, "additional_kwargs") or {}
    reasoning_content = field_value(extras, "reasoning_content")
    if reasoning_content is not None:
        return StreamChunk(
            kind=ChunkKind.DEEPSEEK,
            text=text,
            reasoning=_as_text(reasoning_content) or None,
            tool_calls=tool_calls,
            **common,
        )

    delta_reasoning = field_value(field_value(extras, "delta"), "reasoning")
    details = _reasoning_details_text(field_value(extras, "reasoning_details"))
    if delta_reasoning is not None or details is not None:
        return StreamChunk(
            kind=ChunkKind.OPENROUTER,
            text=text,
            reasoning=_as_text(delta_reasoning) or None,
            reasoning_details=details,
            tool_calls=tool_calls,
            **common,
        )

    return StreamChunk(kind=ChunkKind.PLAIN, text=text, tool_calls=tool_calls, **common)


def _classify_completion_chunk(choices: Sequence[Any], common: dict[str, Any]) -> StreamChunk:
    """Handle raw OpenAI-compatible ``ChatCompletionChunk`` payloads."""

    if not choices:
        return StreamChunk(kind=ChunkKind.PLAIN, **common)
    delta = field_value(choices[0], "delta")
    text = _as_text(field_value(delta, "content"))
    tool_calls = _tool_call_deltas(field_value(delta, "tool_calls"))

    reasoning_content = field_value(delta, "reasoning_content")
    if reasoning_content is not None:
        return StreamChunk(
            kind=ChunkKind.DEEPSEEK,
            text=text,
            reasoning=_as_text(reasoning_content) or None,
            tool_calls=tool_calls,
            **common,
        )
    reasoning = field_value(delta, "reasoning")
    details = _reasoning_details_text(field_value(delta, "reasoning_details"))
    if reasoning is not None or details is not None:
        return StreamChunk(
            kind=ChunkKind.OPENROUTER,
            text=text,
            reasoning=_as_text(reasoning) or None,
            reasoning_details=details,
            tool_calls=tool_calls,
            **common,
        )
    return StreamChunk(kind=ChunkKind.PLAIN, text=text, tool_calls=tool_calls, **common)


def _content_parts(content: Iterable[Any]) -> tuple[ContentPart, ...]:
    parts: list[ContentPart] = []
    for item in content:
        if isinstance(item, str):
            parts.append(ContentPart(type="text", text=item))
            continue
        part_type = field_value(item, "type")
        if part_type == "thinking":
            parts.append(ContentPart(type="thinking", text=_as_text(field_value(item, "thinking"))))
        elif part_type == "text":
            parts.append(ContentPart(type="text", text=_as_text(field_value(item, "text"))))
    return tuple(parts)


def _reasoning_details_text(details: Any) -> str | None:
    if not _is_sequence(details) or not details:
        return None
    texts = [_as_text(field_value(item, "text")) for item in details]
    joined = "".join(texts)
    return joined or None


def _tool_call_deltas(raw_calls: Any) -> tuple[ToolCallDelta, ...]:
    if not _is_sequence(raw_calls):
        return ()
    deltas: list[ToolCallDelta] = []
    for position, item in enumerate(raw_calls):
        index = field_value(item, "index")
        if not isinstance(index, int):
            index = position
        function = field_value(item, "function")
        name = field_value(function, "name") if function is not None else None
        arguments = field_value(function, "arguments") if function is not None else None
        if name is None:
            name = field_value(item, "name")
        if arguments is None:
            arguments = field_value(item, "args")
        if arguments is not None and not isinstance(arguments, str):
            # Some providers ship already-parsed argument objects.
            arguments = json.dumps(arguments, ensure_ascii=False)
        deltas.append(
            ToolCallDelta(
                index=index,
                id=field_value(item, "id") or None,
                name=name or None,
                arguments=arguments,
            )
        )
    return tuple(deltas)
