"""Core type definitions shared by the streaming decoder and the agent loop.

The dataclasses here are frozen so they can be passed between the decoder,
the tool dispatcher and the loop controller without defensive copies.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

__all__ = [
    # Transcript
    "MessageRole",
    "ConversationMessage",
    # Tool calls
    "NativeToolCall",
    "ToolExecutionResult",
    # Stream metadata
    "TokenUsage",
    # Sources
    "SourceEntry",
    "SourceCatalogEntry",
    # Run output
    "AgentRunResult",
]


def _utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Transcript
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class ConversationMessage:
    """Immutable chat message forming one entry of the running transcript.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message.
        tool_call_id: ID linking a tool result to the call that produced it.
        tool_calls: Tool call intents recorded on an assistant turn.
        name: Tool name for tool-result messages.
    """

    role: MessageRole
    content: str
    tool_call_id: str | None = None
    tool_calls: tuple["NativeToolCall", ...] = ()
    name: str | None = None

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_openai_dict() for call in self.tool_calls]
        if self.name is not None and self.role == "tool":
            payload["name"] = self.name
        return payload  # type: ignore[return-value]

    @classmethod
    def system(cls, content: str) -> ConversationMessage:
        """Create a system message."""
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> ConversationMessage:
        """Create a user message."""
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence["NativeToolCall"] | None = None,
    ) -> ConversationMessage:
        """Create an assistant message, optionally carrying tool-call intents."""
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None) -> ConversationMessage:
        """Create a tool result message."""
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)


# -----------------------------------------------------------------------------
# Tool calls
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class NativeToolCall:
    """A fully assembled tool call emitted by the model for one turn."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def arguments_json(self) -> str:
        return json.dumps(dict(self.arguments), ensure_ascii=False)

    def to_openai_dict(self) -> dict[str, Any]:
        """Render the call the way OpenAI expects it on an assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json()},
        }

    def with_arguments(self, arguments: Mapping[str, Any]) -> NativeToolCall:
        return NativeToolCall(id=self.id, name=self.name, arguments=dict(arguments))


@dataclass(slots=True, frozen=True)
class ToolExecutionResult:
    """Outcome of dispatching a single tool call.

    ``result`` is the text handed back to the model; ``display_result`` is an
    optional shorter rendering for the user-facing trace.
    """

    tool_name: str
    success: bool
    result: str
    display_result: str | None = None
    duration_ms: float = 0.0
    error_code: str | None = None

    @classmethod
    def from_success(
        cls,
        tool_name: str,
        result: str,
        *,
        display_result: str | None = None,
        duration_ms: float = 0.0,
    ) -> ToolExecutionResult:
        return cls(
            tool_name=tool_name,
            success=True,
            result=result,
            display_result=display_result,
            duration_ms=duration_ms,
        )

    @classmethod
    def from_error(
        cls,
        tool_name: str,
        message: str,
        *,
        error_code: str | None = None,
        duration_ms: float = 0.0,
    ) -> ToolExecutionResult:
        return cls(
            tool_name=tool_name,
            success=False,
            result=message,
            display_result=message,
            duration_ms=duration_ms,
            error_code=error_code,
        )


# -----------------------------------------------------------------------------
# Stream metadata
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counters reported by the provider for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated=self.estimated or other.estimated,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


# -----------------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SourceEntry:
    """A retrieved document that contributed to an answer."""

    title: str
    path: str = ""
    score: float = 0.0
    explanation: Any | None = None

    @property
    def key(self) -> str:
        return self.path or self.title


@dataclass(slots=True, frozen=True)
class SourceCatalogEntry:
    """Entry of the externally supplied catalog used for citation guidance."""

    title: str
    path: str = ""


# -----------------------------------------------------------------------------
# Run output
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AgentRunResult:
    """Everything an agent run hands back to its caller.

    Attributes:
        text: Final display text, optionally led by a reasoning marker.
        was_truncated: Whether any model response was cut off by a token limit.
        token_usage: Usage from the last model response, if reported.
        sources: Deduplicated sources gathered from local search.
        status: Terminal state of the loop (``final``, ``aborted``...).
        iterations: Number of model invocations that were started.
        fallback_used: Whether the non-agentic answer path produced the text.
        error: User-facing error text when the run ended in an error.
    """

    text: str
    was_truncated: bool = False
    token_usage: TokenUsage | None = None
    sources: tuple[SourceEntry, ...] = ()
    status: str = "final"
    iterations: int = 0
    fallback_used: bool = False
    error: str | None = None
    finished_at: datetime = field(default_factory=_utcnow)

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "wasTruncated": self.was_truncated,
            "tokenUsage": self.token_usage.to_dict() if self.token_usage else None,
        }
