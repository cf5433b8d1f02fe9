"""Agent loop controller and the collaborators it drives."""

from .cancellation import AbortReason, CancellationSignal, RunCancelled, TerminalClaim
from .fallback import FallbackConfig, Retriever, SimpleAnswerRunner
from .loop import AgentLoopController, LoopConfig, LoopState, max_iterations_notice, time_limit_notice
from .reasoning import (
    MAX_VISIBLE_STEPS,
    ReasoningEnvelope,
    ReasoningState,
    ReasoningStatus,
    ReasoningStep,
    ReasoningTracker,
    strip_reasoning_marker,
)
from .responses import (
    INTERRUPTED_NOTICE,
    FinalizedResponse,
    InMemoryTranscriptStore,
    TranscriptEntry,
    TranscriptStore,
    finalize_response,
    render_error,
)
from .search import (
    LocalSearchOutcome,
    QueryExpander,
    build_context_first_message,
    deduplicate_sources,
    ensure_context_before_question,
    extract_sources,
    process_local_search_result,
)
from .summaries import (
    LocalSearchSummary,
    QueryExpansion,
    summarize_tool_call,
    summarize_tool_result,
    tool_display_name,
)
from .tools import RegistryToolDispatcher, SimpleTool, ToolDispatcher, ToolRegistry, ToolSpec

__all__ = [
    # Loop
    "AgentLoopController",
    "LoopConfig",
    "LoopState",
    "max_iterations_notice",
    "time_limit_notice",
    # Cancellation
    "AbortReason",
    "CancellationSignal",
    "RunCancelled",
    "TerminalClaim",
    # Fallback
    "FallbackConfig",
    "Retriever",
    "SimpleAnswerRunner",
    # Reasoning
    "MAX_VISIBLE_STEPS",
    "ReasoningEnvelope",
    "ReasoningState",
    "ReasoningStatus",
    "ReasoningStep",
    "ReasoningTracker",
    "strip_reasoning_marker",
    # Responses
    "INTERRUPTED_NOTICE",
    "FinalizedResponse",
    "InMemoryTranscriptStore",
    "TranscriptEntry",
    "TranscriptStore",
    "finalize_response",
    "render_error",
    # Search
    "LocalSearchOutcome",
    "QueryExpander",
    "build_context_first_message",
    "deduplicate_sources",
    "ensure_context_before_question",
    "extract_sources",
    "process_local_search_result",
    # Summaries
    "LocalSearchSummary",
    "QueryExpansion",
    "summarize_tool_call",
    "summarize_tool_result",
    "tool_display_name",
    # Tools
    "RegistryToolDispatcher",
    "SimpleTool",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolSpec",
]
