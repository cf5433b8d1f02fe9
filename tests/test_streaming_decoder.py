"""Tests for the streaming decoder."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from helpers import reasoning_chunk, text_chunk, tool_call_chunk, usage_chunk

from wayfinder.ai.streaming import (
    THINK_CLOSE,
    THINK_OPEN,
    ChunkKind,
    StreamingDecoder,
    ToolBlockTruncationPolicy,
    ToolCallAccumulator,
    classify_chunk,
    split_reasoning,
    strip_think_blocks,
)


def _decode(*chunks, **kwargs):
    decoder = StreamingDecoder(**kwargs)
    for chunk in chunks:
        decoder.process_chunk(chunk)
    return decoder.close()


# =============================================================================
# Reasoning / visible segmentation
# =============================================================================


class TestReasoningSegments:
    """Reasoning and visible text never overlap."""

    def test_plain_text_is_concatenated(self):
        result = _decode(text_chunk("Hello "), text_chunk("world"))
        assert result.content == "Hello world"
        assert result.was_truncated is False

    def test_reasoning_then_text_is_wrapped(self):
        result = _decode(reasoning_chunk("weighing"), reasoning_chunk(" options"), text_chunk("Answer"))
        assert result.content == f"{THINK_OPEN}weighing options{THINK_CLOSE}Answer"
        assert result.visible_text == "Answer"

    def test_open_block_is_closed_on_close(self):
        result = _decode(reasoning_chunk("still thinking"))
        assert result.content == f"{THINK_OPEN}still thinking{THINK_CLOSE}"

    def test_exclude_thinking_drops_reasoning(self):
        result = _decode(reasoning_chunk("secret"), text_chunk("Answer"), exclude_thinking=True)
        assert result.content == "Answer"
        assert "<think>" not in result.content

    def test_interleaved_reasoning_reopens_block(self):
        result = _decode(
            reasoning_chunk("a"),
            text_chunk("one "),
            reasoning_chunk("b"),
            text_chunk("two"),
        )
        assert result.content == f"{THINK_OPEN}a{THINK_CLOSE}one {THINK_OPEN}b{THINK_CLOSE}two"

    @pytest.mark.parametrize(
        "sequence",
        [
            ["r", "t", "r"],
            ["t", "r", "r", "t", "r"],
            ["r", "r", "r"],
            ["t", "t"],
            ["r", "t", "t", "r", "t"],
            ["t", "o"],
            ["r", "t", "o"],
            ["o"],
        ],
    )
    def test_markers_are_balanced_for_any_interleaving(self, sequence):
        # "o" is a think tag the model writes into its visible text and never closes
        kinds = {"r": lambda: reasoning_chunk("x"), "t": lambda: text_chunk("y"), "o": lambda: text_chunk("<think>z")}
        chunks = [kinds[kind]() for kind in sequence]
        result = _decode(*chunks)
        assert result.content.count("<think>") == result.content.count(THINK_CLOSE)
        # Visible text never sits inside an open block
        reasoning, visible = split_reasoning(result.content)
        assert "y" not in reasoning
        assert "x" not in visible


class TestChunkShapes:
    """Every provider shape feeds the same open/append/close protocol."""

    def test_claude_style_parts(self):
        chunk = {"content": [{"type": "thinking", "thinking": "hmm"}, {"type": "text", "text": "Hi"}]}
        assert classify_chunk(chunk).kind is ChunkKind.CLAUDE
        result = _decode(chunk)
        assert result.content == f"{THINK_OPEN}hmm{THINK_CLOSE}Hi"

    def test_claude_thinking_part_without_text_still_opens_block(self):
        result = _decode(
            {"content": [{"type": "thinking"}]},
            {"content": [{"type": "text", "text": "ok"}]},
        )
        assert result.content == f"{THINK_OPEN}{THINK_CLOSE}ok"

    def test_deepseek_additional_kwargs(self):
        chunk = {"content": "", "additional_kwargs": {"reasoning_content": "because"}}
        assert classify_chunk(chunk).kind is ChunkKind.DEEPSEEK
        result = _decode(chunk, {"content": "done"})
        assert result.content == f"{THINK_OPEN}because{THINK_CLOSE}done"

    def test_empty_side_channel_reasoning_never_opens_block(self):
        result = _decode(
            {"content": "", "additional_kwargs": {"reasoning_content": ""}},
            {"content": "text"},
        )
        assert result.content == "text"

    def test_openrouter_delta_reasoning(self):
        result = _decode(
            {"content": "", "additional_kwargs": {"delta": {"reasoning": "r1"}}},
            {"content": "done", "additional_kwargs": {}},
        )
        assert result.content == f"{THINK_OPEN}r1{THINK_CLOSE}done"

    def test_openrouter_details_ignored_after_delta_reasoning(self):
        result = _decode(
            {"content": "", "additional_kwargs": {"delta": {"reasoning": "a"}}},
            {"content": "", "additional_kwargs": {"reasoning_details": [{"text": "full transcript"}]}},
        )
        assert result.content == f"{THINK_OPEN}a{THINK_CLOSE}"

    def test_openrouter_details_used_without_delta_reasoning(self):
        result = _decode(
            {"content": "", "additional_kwargs": {"reasoning_details": [{"text": "full "}, {"text": "transcript"}]}},
            {"content": "answer"},
        )
        assert result.content == f"{THINK_OPEN}full transcript{THINK_CLOSE}answer"

    def test_empty_reasoning_details_are_ignored(self):
        chunk = {"content": "x", "additional_kwargs": {"reasoning_details": []}}
        assert classify_chunk(chunk).kind is ChunkKind.PLAIN
        assert _decode(chunk).content == "x"

    def test_ollama_message_shape(self):
        result = _decode(
            {"message": {"thinking": "t", "content": ""}},
            {"message": {"content": "hi"}, "done_reason": "length", "prompt_eval_count": 5, "eval_count": 7},
        )
        assert result.content == f"{THINK_OPEN}t{THINK_CLOSE}hi"
        assert result.was_truncated is True
        assert result.token_usage is not None
        assert result.token_usage.total_tokens == 12

    def test_attribute_objects_classify_like_mappings(self):
        delta = SimpleNamespace(content="hi", tool_calls=None, reasoning_content=None, reasoning=None)
        chunk = SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=None)], usage=None)
        assert classify_chunk(chunk) == classify_chunk(text_chunk("hi"))

    def test_plain_strings_are_text(self):
        assert _decode("a", "b").content == "ab"


# =============================================================================
# Signals
# =============================================================================


class TestSignals:
    """Truncation and usage metadata."""

    def test_truncation_is_sticky(self):
        result = _decode(text_chunk("a", finish_reason="length"), text_chunk("b", finish_reason="stop"))
        assert result.was_truncated is True

    @pytest.mark.parametrize(
        "chunk",
        [
            {"content": "x", "response_metadata": {"finish_reason": "max_tokens"}},
            {"content": "x", "stop_reason": "max_tokens"},
            {"content": "x", "response_metadata": {"finish_reason": "MAX_TOKENS"}},
            {"message": {"content": "x"}, "done_reason": "length"},
        ],
    )
    def test_provider_truncation_signals(self, chunk):
        assert _decode(chunk).was_truncated is True

    def test_normal_stop_is_not_truncation(self):
        assert _decode(text_chunk("done", finish_reason="stop")).was_truncated is False

    def test_usage_is_last_write_wins(self):
        result = _decode(text_chunk("a"), usage_chunk(1, 2), usage_chunk(3, 4))
        assert result.token_usage is not None
        assert result.token_usage.prompt_tokens == 3
        assert result.token_usage.completion_tokens == 4
        assert result.token_usage.total_tokens == 7

    def test_usage_metadata_shape(self):
        result = _decode({"content": "a", "usage_metadata": {"input_tokens": 10, "output_tokens": 2}})
        assert result.token_usage is not None
        assert result.token_usage.total_tokens == 12


# =============================================================================
# Repair and early truncation
# =============================================================================


class TestRepair:
    """Best-effort repairs never fail the stream."""

    def test_orphan_close_marker_gets_synthesized_open(self):
        result = _decode(text_chunk("oops</think>answer"))
        assert result.content == f"{THINK_OPEN}oops</think>answer"
        assert len(result.warnings) == 1

    def test_think_tag_in_plain_text_is_closed_at_end_of_stream(self):
        result = _decode(text_chunk("<think>pondering the"), text_chunk(" question"))
        assert result.content == f"<think>pondering the question{THINK_CLOSE}"
        assert result.content.count("<think>") == result.content.count(THINK_CLOSE)
        assert len(result.warnings) == 1

    def test_halt_without_policy_keeps_streaming(self):
        decoder = StreamingDecoder()
        decoder.process_chunk(text_chunk("a"))
        decoder._halt()
        decoder.process_chunk(text_chunk("b"))
        result = decoder.close()
        assert result.content == "ab"
        assert result.was_truncated is False

    def test_close_is_idempotent(self):
        decoder = StreamingDecoder()
        decoder.process_chunk(reasoning_chunk("r"))
        first = decoder.close()
        assert decoder.close() is first
        decoder.process_chunk(text_chunk("late"))
        assert decoder.close().content == first.content

    def test_update_fires_only_on_change(self):
        updates: list[str] = []
        decoder = StreamingDecoder(updates.append)
        decoder.process_chunk(text_chunk("a"))
        decoder.process_chunk(text_chunk(""))
        decoder.process_chunk(usage_chunk(1, 1))
        decoder.process_chunk(text_chunk("b"))
        assert updates == ["a", "ab"]

    def test_failing_update_callback_does_not_break_decoding(self):
        def explode(_text: str) -> None:
            raise RuntimeError("render failed")

        decoder = StreamingDecoder(explode)
        decoder.process_chunk(text_chunk("still works"))
        assert decoder.close().content == "still works"

    def test_early_truncation_trims_to_last_tool_block(self):
        policy = ToolBlockTruncationPolicy()
        decoder = StreamingDecoder(truncation_policy=policy)
        decoder.process_chunk(text_chunk("call <use_tool>x</use_tool>"))
        decoder.process_chunk(text_chunk("y" * 60))
        assert decoder.stopped is True
        decoder.process_chunk(text_chunk("ignored"))
        result = decoder.close()
        assert result.content == "call <use_tool>x</use_tool>"
        assert result.was_truncated is True

    def test_short_trailing_text_does_not_trip_policy(self):
        decoder = StreamingDecoder(truncation_policy=ToolBlockTruncationPolicy())
        decoder.process_chunk(text_chunk("<use_tool>x</use_tool> short tail"))
        assert decoder.stopped is False

    def test_tool_call_fragments_reach_accumulator(self):
        accumulator = ToolCallAccumulator()
        decoder = StreamingDecoder(accumulator=accumulator)
        decoder.process_chunk(tool_call_chunk(0, call_id="call_a", name="localSearch", arguments='{"query": '))
        decoder.process_chunk(tool_call_chunk(0, arguments='"piano"}'))
        decoder.close()
        calls = accumulator.finalize()
        assert len(calls) == 1
        assert calls[0].id == "call_a"
        assert calls[0].arguments == {"query": "piano"}


class TestThinkHelpers:
    def test_strip_think_blocks(self):
        assert strip_think_blocks(f"{THINK_OPEN}a{THINK_CLOSE}Answer") == "Answer"
        assert strip_think_blocks("") == ""

    def test_split_reasoning(self):
        reasoning, visible = split_reasoning(f"{THINK_OPEN}plan{THINK_CLOSE}Result")
        assert reasoning == "plan"
        assert visible == "Result"
