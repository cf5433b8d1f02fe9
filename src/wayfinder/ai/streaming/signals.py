"""Provider-agnostic stream signals: truncation, token usage, early cut-off."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..types import TokenUsage

__all__ = [
    "TRUNCATION_REASONS",
    "extract_finish_reason",
    "detect_truncation",
    "extract_token_usage",
    "TruncationPolicy",
    "ToolBlockTruncationPolicy",
]

TRUNCATION_REASONS = frozenset({"length", "max_tokens", "max_output_tokens"})
_THINK_BLOCK_RE = re.compile(r"<think>[\s\S]*?</think>")


def _get(source: Any, name: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    value = getattr(source, name, None)
    if value is None:
        extra = getattr(source, "model_extra", None)
        if isinstance(extra, Mapping):
            return extra.get(name)
    return value


def _first_choice(raw: Any) -> Any:
    choices = _get(raw, "choices")
    if isinstance(choices, Sequence) and not isinstance(choices, str) and choices:
        return choices[0]
    return None


# -----------------------------------------------------------------------------
# Finish reason / truncation
# -----------------------------------------------------------------------------


def extract_finish_reason(raw: Any) -> str | None:
    """Return the finish signal carried by ``raw`` regardless of provider shape."""

    candidates = [
        _get(_first_choice(raw), "finish_reason"),
        _get(raw, "finish_reason"),
        _get(raw, "stop_reason"),
        _get(raw, "done_reason"),
    ]
    for container in ("response_metadata", "generation_info"):
        metadata = _get(raw, container)
        candidates.extend(
            [
                _get(metadata, "finish_reason"),
                _get(metadata, "stop_reason"),
                _get(metadata, "done_reason"),
            ]
        )
    for value in candidates:
        if isinstance(value, str) and value:
            return value
    return None


def detect_truncation(raw: Any) -> bool:
    """Return ``True`` when the chunk reports a length-limited completion."""

    reason = extract_finish_reason(raw)
    if reason is None:
        return False
    return reason.strip().lower() in TRUNCATION_REASONS


# -----------------------------------------------------------------------------
# Token usage
# -----------------------------------------------------------------------------


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def _usage_from(payload: Any) -> TokenUsage | None:
    if payload is None:
        return None
    prompt = _as_int(_get(payload, "prompt_tokens"))
    completion = _as_int(_get(payload, "completion_tokens"))
    if prompt is None and completion is None:
        prompt = _as_int(_get(payload, "input_tokens"))
        completion = _as_int(_get(payload, "output_tokens"))
    if prompt is None and completion is None:
        return None
    prompt = prompt or 0
    completion = completion or 0
    total = _as_int(_get(payload, "total_tokens"))
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total if total is not None else prompt + completion,
    )


def extract_token_usage(raw: Any) -> TokenUsage | None:
    """Return token usage totals from ``raw`` when the chunk carries them."""

    for key in ("usage", "usage_metadata"):
        usage = _usage_from(_get(raw, key))
        if usage is not None:
            return usage
    for container in ("response_metadata", "generation_info"):
        metadata = _get(raw, container)
        usage = _usage_from(_get(metadata, "usage")) or _usage_from(_get(metadata, "tokenUsage"))
        if usage is not None:
            return usage

    # Ollama reports counts directly on the final chunk.
    prompt = _as_int(_get(raw, "prompt_eval_count"))
    completion = _as_int(_get(raw, "eval_count"))
    if prompt is not None or completion is not None:
        prompt = prompt or 0
        completion = completion or 0
        return TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        )
    return None


# -----------------------------------------------------------------------------
# Early truncation policy
# -----------------------------------------------------------------------------


@runtime_checkable
class TruncationPolicy(Protocol):
    """Decides when a decoder should stop accepting chunks."""

    def should_truncate(self, partial: str) -> bool:
        ...

    def trim(self, partial: str) -> str:
        """Cut ``partial`` back to its last structurally complete boundary."""
        ...


@dataclass(slots=True, frozen=True)
class ToolBlockTruncationPolicy:
    """Stop streaming once a model keeps talking past its last tool block.

    Some models emit a text-embedded tool call and then hallucinate the tool's
    output. When more than ``threshold`` characters of non-reasoning text
    follow the last ``end_marker`` the stream is cut at that marker.
    """

    end_marker: str = "</use_tool>"
    threshold: int = 50

    def should_truncate(self, partial: str) -> bool:
        index = partial.rfind(self.end_marker)
        if index == -1:
            return False
        trailing = partial[index + len(self.end_marker):].strip()
        trailing = _THINK_BLOCK_RE.sub("", trailing).strip()
        return len(trailing) > self.threshold

    def trim(self, partial: str) -> str:
        index = partial.rfind(self.end_marker)
        if index == -1:
            return partial
        return partial[: index + len(self.end_marker)]
