"""Tool registry and dispatch for the agent loop.

Tools are registered once, before a run starts, and the registry is treated
as read-only for the duration of the run. Dispatch never raises for ordinary
tool failures; those come back as ``ToolExecutionResult(success=False)``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from jsonschema import Draft7Validator, ValidationError

from ..errors import ErrorCode, ToolDispatchError
from ..types import NativeToolCall, ToolExecutionResult
from .summaries import tool_display_name, tool_emoji

__all__ = [
    "DEFAULT_TOOL_TIMEOUT",
    "ToolSpec",
    "ToolHandler",
    "Tool",
    "SimpleTool",
    "DuplicateToolError",
    "ToolRegistry",
    "ToolDispatcher",
    "RegistryToolDispatcher",
    "format_tool_result",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0
_EMPTY_RESULT = {"message": "Tool executed but returned no result", "status": "empty"}
_MAX_LOGGED_RESULT = 300


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Interface of a tool as advertised to the model.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's arguments.
        timeout: Per-tool timeout in seconds; ``None`` uses the dispatcher
            default and ``0`` disables the timeout.
        background: Background tools are not announced in the reasoning trace.
        requires_user_message: Inject the original user message as
            ``_userMessageContent`` before dispatch.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    timeout: float | None = None
    background: bool = False
    requires_user_message: bool = False

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


# Sync handlers return the result; async handlers return a coroutine
ToolHandler = Callable[[Mapping[str, Any]], Any]


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        ...


@dataclass
class SimpleTool:
    """Tool wrapping a plain sync or async callable.

    Example:
        tool = SimpleTool(
            spec=ToolSpec(name="getCurrentTime", description="Current time"),
            handler=lambda args: datetime.now().isoformat(),
        )
    """

    spec: ToolSpec
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolRegistry:
    """Name-indexed collection of tools.

    Registration happens before a run; :meth:`freeze` locks the registry so
    that the loop can share it without copies.
    """

    def __init__(self, tools: Sequence[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        self._validators: dict[str, Draft7Validator] = {}
        self._frozen = False
        for tool in tools:
            self.register(tool)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> ToolRegistry:
        self._frozen = True
        return self

    def register(self, tool: Tool, *, allow_override: bool = False) -> Tool:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
            RuntimeError: If the registry has been frozen.
        """
        if self._frozen:
            raise RuntimeError("Tool registry is read-only once frozen")
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        schema = tool.spec.parameters
        if schema:
            Draft7Validator.check_schema(dict(schema))
            self._validators[name] = Draft7Validator(dict(schema))
        else:
            self._validators.pop(name, None)
        LOGGER.debug("Registered tool: %s", name)
        return tool

    def register_function(self, spec: ToolSpec, handler: ToolHandler, **kwargs: Any) -> Tool:
        return self.register(SimpleTool(spec=spec, handler=handler), **kwargs)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def validator(self, name: str) -> Draft7Validator | None:
        return self._validators.get(name)

    def list_names(self) -> list[str]:
        return list(self._tools)

    def list_specs(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def get_openai_tools(self) -> list[dict[str, Any]]:
        return [tool.spec.to_openai_tool() for tool in self._tools.values()]

    def is_background(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool is not None and tool.spec.background)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------


@runtime_checkable
class ToolDispatcher(Protocol):
    """Tool dispatch capability consumed by the agent loop."""

    def available_tools(self) -> list[dict[str, Any]]:  # pragma: no cover - protocol stub
        ...

    def is_background(self, name: str) -> bool:  # pragma: no cover - protocol stub
        ...

    async def dispatch(
        self,
        call: NativeToolCall,
        *,
        user_message: str | None = None,
    ) -> ToolExecutionResult:  # pragma: no cover - protocol stub
        ...


def format_tool_result(result: Any) -> str:
    """Stringify a raw tool return value for the transcript."""

    if result is None:
        return json.dumps(_EMPTY_RESULT)
    if isinstance(result, str):
        return result
    if hasattr(result, "to_dict") and callable(result.to_dict):
        result = result.to_dict()
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message


class RegistryToolDispatcher:
    """Dispatches calls against a :class:`ToolRegistry` with a per-call timeout."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        default_timeout: float | None = DEFAULT_TOOL_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def available_tools(self) -> list[dict[str, Any]]:
        return self._registry.get_openai_tools()

    def is_background(self, name: str) -> bool:
        return self._registry.is_background(name)

    async def dispatch(
        self,
        call: NativeToolCall,
        *,
        user_message: str | None = None,
    ) -> ToolExecutionResult:
        name = call.name
        if not name:
            return ToolExecutionResult.from_error(
                "unknown",
                "Error: Invalid tool call - missing tool name",
                error_code=ErrorCode.TOOL_NOT_FOUND,
            )

        LOGGER.info("%s Calling %s (call_id=%s)", tool_emoji(name), tool_display_name(name), call.id)
        tool = self._registry.get(name)
        if tool is None:
            available = ", ".join(self._registry.list_names())
            LOGGER.warning("Tool %s not found", name)
            return ToolExecutionResult.from_error(
                name,
                f"Error: Tool '{name}' not found. Available tools: {available}",
                error_code=ErrorCode.TOOL_NOT_FOUND,
            )

        arguments = dict(call.arguments)
        validator = self._registry.validator(name)
        if validator is not None:
            error = next(iter(sorted(validator.iter_errors(arguments), key=lambda e: list(e.path))), None)
            if error is not None:
                message = f"Error: Invalid arguments for '{name}': {_format_validation_error(error)}"
                LOGGER.warning(message)
                return ToolExecutionResult.from_error(name, message, error_code=ErrorCode.INVALID_ARGUMENTS)

        if tool.spec.requires_user_message and user_message:
            arguments["_userMessageContent"] = user_message

        timeout = tool.spec.timeout if tool.spec.timeout is not None else self._default_timeout
        start_time = time.perf_counter()
        try:
            if timeout:
                raw = await asyncio.wait_for(tool.execute(arguments), timeout=timeout)
            else:
                raw = await tool.execute(arguments)
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s timed out after %.1fms (timeout=%ss)", name, duration_ms, timeout)
            return ToolExecutionResult.from_error(
                name,
                f"Error: Tool '{name}' timed out after {timeout:g} seconds",
                error_code=ErrorCode.TOOL_TIMEOUT,
                duration_ms=duration_ms,
            )
        except asyncio.CancelledError:
            raise
        except ToolDispatchError:
            raise
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            return ToolExecutionResult.from_error(
                name,
                f"Error: {exc}",
                error_code=ErrorCode.TOOL_FAILED,
                duration_ms=duration_ms,
            )

        duration_ms = (time.perf_counter() - start_time) * 1000
        if raw is None:
            LOGGER.warning("Tool %s returned no result", name)
        text = format_tool_result(raw)
        shown = text if len(text) <= _MAX_LOGGED_RESULT else f"{text[:_MAX_LOGGED_RESULT]}... ({len(text)} chars total)"
        LOGGER.debug("Tool %s completed in %.1fms: %s", name, duration_ms, shown)
        return ToolExecutionResult.from_success(name, text, duration_ms=duration_ms)
