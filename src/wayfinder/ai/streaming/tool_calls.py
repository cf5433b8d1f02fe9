"""Accumulation of streamed tool-call fragments into invocable calls."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..types import NativeToolCall
from .chunks import ToolCallDelta

__all__ = ["ToolCallChunk", "ToolCallAccumulator", "parse_tool_arguments"]

LOGGER = logging.getLogger(__name__)

_EMPTY_OBJECT = "{}"


@dataclass(slots=True)
class ToolCallChunk:
    """Mutable accumulator cell for a single call index."""

    index: int
    id: str = ""
    name: str = ""
    args: str = ""

    def absorb(self, delta: ToolCallDelta) -> None:
        if delta.id and not self.id:
            self.id = delta.id
        if delta.name:
            self.name += delta.name
        if delta.arguments:
            self.args = _merge_arguments(self.args, delta.arguments)


def _is_complete_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def _merge_arguments(current: str, fragment: str) -> str:
    """Concatenate ``fragment`` onto ``current`` while dropping stray ``{}``.

    A provider may announce a call with an empty ``{}`` before streaming the
    real arguments, or repeat ``{}`` after a complete object. Neither may
    leak into the final JSON.
    """

    if current.strip() == _EMPTY_OBJECT and fragment.lstrip().startswith("{"):
        return fragment
    if fragment.strip() == _EMPTY_OBJECT and current.strip() and _is_complete_json(current):
        return current
    return current + fragment


def parse_tool_arguments(arguments: str) -> dict[str, Any]:
    """Parse tool arguments from a JSON string.

    Raises:
        ValueError: If arguments cannot be parsed or are not a JSON object.
    """
    if not arguments or arguments.strip() in ("", _EMPTY_OBJECT):
        return {}

    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in tool arguments: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


@dataclass(slots=True)
class ToolCallAccumulator:
    """Merges fragmented tool-call deltas for one streaming turn.

    Fragments are grouped by index. ``name`` and ``args`` fragments are
    concatenated in arrival order and the first non-empty ``id`` wins.
    :meth:`finalize` never raises: malformed argument JSON degrades to an
    empty argument map and a recorded warning.
    """

    _cells: dict[int, ToolCallChunk] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def ingest(self, delta: ToolCallDelta) -> None:
        cell = self._cells.get(delta.index)
        if cell is None:
            cell = ToolCallChunk(index=delta.index)
            self._cells[delta.index] = cell
        cell.absorb(delta)

    def ingest_many(self, deltas: Iterable[ToolCallDelta]) -> None:
        for delta in deltas:
            self.ingest(delta)

    @property
    def pending(self) -> int:
        return len(self._cells)

    def cells(self) -> list[ToolCallChunk]:
        return [self._cells[index] for index in sorted(self._cells)]

    def finalize(self) -> list[NativeToolCall]:
        calls: list[NativeToolCall] = []
        for cell in self.cells():
            name = cell.name.strip()
            if not name:
                self._warn(f"Dropping tool call at index {cell.index}: no tool name was streamed")
                continue
            try:
                arguments = parse_tool_arguments(cell.args)
            except ValueError as exc:
                self._warn(f"Tool call '{name}' has malformed arguments; using empty arguments ({exc})")
                arguments = {}
            calls.append(
                NativeToolCall(
                    id=cell.id or f"call_{cell.index}",
                    name=name,
                    arguments=arguments,
                )
            )
        return calls

    def reset(self) -> None:
        self._cells.clear()
        self.warnings.clear()

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        LOGGER.warning(message)
