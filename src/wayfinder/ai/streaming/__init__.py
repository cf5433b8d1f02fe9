"""Streaming decoder, chunk normalization and tool-call accumulation."""

from .chunks import ChunkKind, ContentPart, StreamChunk, ToolCallDelta, classify_chunk
from .decoder import (
    THINK_CLOSE,
    THINK_OPEN,
    DecodedResponse,
    StreamingDecoder,
    UpdateCallback,
    split_reasoning,
    strip_think_blocks,
)
from .signals import (
    ToolBlockTruncationPolicy,
    TruncationPolicy,
    detect_truncation,
    extract_token_usage,
)
from .tool_calls import ToolCallAccumulator, ToolCallChunk, parse_tool_arguments

__all__ = [
    # Chunks
    "ChunkKind",
    "ContentPart",
    "StreamChunk",
    "ToolCallDelta",
    "classify_chunk",
    # Decoder
    "THINK_OPEN",
    "THINK_CLOSE",
    "DecodedResponse",
    "StreamingDecoder",
    "UpdateCallback",
    "split_reasoning",
    "strip_think_blocks",
    # Signals
    "TruncationPolicy",
    "ToolBlockTruncationPolicy",
    "detect_truncation",
    "extract_token_usage",
    # Tool calls
    "ToolCallAccumulator",
    "ToolCallChunk",
    "parse_tool_arguments",
]
