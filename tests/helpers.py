"""Shared test helpers and stub classes.

Import from here instead of duplicating fakes in individual test files::

    from helpers import MockModelClient, text_chunk, tool_call_chunk
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Iterable, Mapping, Sequence

from wayfinder.ai.types import NativeToolCall, ToolExecutionResult


# =============================================================================
# Chunk builders (OpenAI-compatible ChatCompletionChunk dictionaries)
# =============================================================================


def text_chunk(text: str, *, finish_reason: str | None = None) -> dict[str, Any]:
    return {"choices": [{"delta": {"content": text}, "finish_reason": finish_reason}]}


def reasoning_chunk(text: str) -> dict[str, Any]:
    """Deepseek-style chunk carrying ``reasoning_content``."""

    return {"choices": [{"delta": {"content": "", "reasoning_content": text}, "finish_reason": None}]}


def tool_call_chunk(
    index: int,
    *,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    call: dict[str, Any] = {"index": index, "function": function}
    if call_id is not None:
        call["id"] = call_id
    return {"choices": [{"delta": {"tool_calls": [call]}, "finish_reason": None}]}


def usage_chunk(prompt: int, completion: int) -> dict[str, Any]:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        },
    }


def tool_turn(name: str, arguments: Mapping[str, Any], *, call_id: str = "call_1") -> list[dict[str, Any]]:
    """A complete model turn that requests a single tool call."""

    payload = json.dumps(dict(arguments))
    middle = max(1, len(payload) // 2)
    return [
        tool_call_chunk(0, call_id=call_id, name=name, arguments=payload[:middle]),
        tool_call_chunk(0, arguments=payload[middle:]),
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
    ]


# =============================================================================
# Model client
# =============================================================================


class MockModelClient:
    """Model client that replays scripted turns.

    Each turn is either a list of chunks or an exception instance; exceptions
    are raised when the turn is requested. The final turn repeats once the
    script runs out.
    """

    def __init__(
        self,
        turns: Sequence[Sequence[Any] | BaseException],
        *,
        on_chunk: Callable[[int, int], Any] | None = None,
        chunk_delay: float = 0.0,
    ) -> None:
        self.turns = list(turns)
        self.calls: list[dict[str, Any]] = []
        self.closed_streams = 0
        self._on_chunk = on_chunk
        self._chunk_delay = chunk_delay

    def stream_chat(
        self,
        messages: Sequence[Any],
        tools: Iterable[Mapping[str, Any]] | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        turn_index = len(self.calls)
        self.calls.append(
            {
                "messages": list(messages),
                "tools": list(tools) if tools else None,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        turn = self.turns[min(turn_index, len(self.turns) - 1)]
        return self._stream(turn_index, turn)

    async def _stream(self, turn_index: int, turn: Sequence[Any] | BaseException):
        try:
            if isinstance(turn, BaseException):
                raise turn
            for position, chunk in enumerate(turn):
                if self._chunk_delay:
                    await asyncio.sleep(self._chunk_delay)
                yield chunk
                if self._on_chunk is not None:
                    self._on_chunk(turn_index, position)
        finally:
            self.closed_streams += 1


class OverloadedError(Exception):
    """Provider error shaped like an HTTP 529 response."""

    status_code = 529

    def __init__(self, message: str = "Overloaded") -> None:
        super().__init__(message)


# =============================================================================
# Tool dispatch
# =============================================================================


class MockToolDispatcher:
    """Dispatcher that returns canned results per tool name."""

    def __init__(
        self,
        results: Mapping[str, Any] | None = None,
        *,
        background: Iterable[str] = (),
    ) -> None:
        self.results = dict(results or {})
        self.background = set(background)
        self.dispatched: list[NativeToolCall] = []
        self.user_messages: list[str | None] = []

    def available_tools(self) -> list[dict[str, Any]]:
        return [
            {"type": "function", "function": {"name": name, "description": name, "parameters": {"type": "object"}}}
            for name in self.results
        ]

    def is_background(self, name: str) -> bool:
        return name in self.background

    async def dispatch(self, call: NativeToolCall, *, user_message: str | None = None) -> ToolExecutionResult:
        self.dispatched.append(call)
        self.user_messages.append(user_message)
        outcome = self.results.get(call.name, "ok")
        if isinstance(outcome, ToolExecutionResult):
            return outcome
        if isinstance(outcome, Exception):
            return ToolExecutionResult.from_error(call.name, f"Error: {outcome}")
        if not isinstance(outcome, str):
            outcome = json.dumps(outcome)
        return ToolExecutionResult.from_success(call.name, outcome)


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
