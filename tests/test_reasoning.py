"""Tests for the reasoning tracker, step summaries and cancellation primitives."""

from __future__ import annotations

import asyncio

import pytest

from helpers import FakeClock

from wayfinder.ai.agent import (
    AbortReason,
    CancellationSignal,
    LocalSearchSummary,
    QueryExpansion,
    ReasoningEnvelope,
    ReasoningStatus,
    ReasoningTracker,
    RunCancelled,
    TerminalClaim,
    strip_reasoning_marker,
    summarize_tool_call,
    summarize_tool_result,
)
from wayfinder.ai.agent.reasoning import MAX_VISIBLE_STEPS


# =============================================================================
# Reasoning envelope
# =============================================================================


class TestReasoningEnvelope:
    """Inline marker serialization."""

    def test_serialize(self):
        envelope = ReasoningEnvelope(ReasoningStatus.REASONING, 3, ('Searching notes for "piano"',))
        assert envelope.serialize() == (
            '<!--AGENT_REASONING:reasoning:3:["Searching notes for \\"piano\\""]-->'
        )

    def test_idle_serializes_to_nothing(self):
        assert ReasoningEnvelope(ReasoningStatus.IDLE, 0).serialize() == ""

    def test_parse_round_trip(self):
        envelope = ReasoningEnvelope(ReasoningStatus.COMPLETE, 12, ("one", "two"))
        parsed, rest = ReasoningEnvelope.parse(envelope.serialize() + "\n\nThe answer")
        assert parsed == envelope
        assert rest == "The answer"

    def test_malformed_steps_yield_empty_steps(self):
        parsed, rest = ReasoningEnvelope.parse("<!--AGENT_REASONING:collapsed:4:[not json-->body")
        assert parsed is not None
        assert parsed.status is ReasoningStatus.COLLAPSED
        assert parsed.elapsed_seconds == 4
        assert parsed.steps == ()
        assert rest == "body"

    def test_unknown_status_is_ignored(self):
        content = '<!--AGENT_REASONING:pondering:1:["x"]-->body'
        assert ReasoningEnvelope.parse(content) == (None, content)

    def test_missing_marker(self):
        assert ReasoningEnvelope.parse("plain") == (None, "plain")

    def test_strip_reasoning_marker(self):
        content = '<!--AGENT_REASONING:complete:2:["a"]-->\n\nAnswer'
        assert strip_reasoning_marker(content) == "Answer"
        assert strip_reasoning_marker("Answer") == "Answer"


# =============================================================================
# Tracker
# =============================================================================


class TestReasoningTrackerSteps:
    """Step bookkeeping does not need a running timer."""

    def test_rolling_window_keeps_last_steps(self):
        tracker = ReasoningTracker()
        for index in range(MAX_VISIBLE_STEPS + 2):
            tracker.add_step(f"step {index}")
        assert [step.summary for step in tracker.state.steps] == [
            f"step {index}" for index in range(2, MAX_VISIBLE_STEPS + 2)
        ]
        assert len(tracker.state.history) == MAX_VISIBLE_STEPS + 2
        assert tracker.step_summaries()[0] == "step 0"

    def test_display_only_steps_skip_rolling_window(self):
        tracker = ReasoningTracker()
        tracker.add_step("visible")
        tracker.add_step("background", display_only=True)
        assert [step.summary for step in tracker.state.steps] == ["visible"]
        assert tracker.step_summaries() == ["visible", "background"]

    def test_compose_without_marker_returns_body(self):
        tracker = ReasoningTracker()
        assert tracker.compose("Answer") == "Answer"


class TestReasoningTrackerTimer:
    """Timer-driven rendering."""

    @pytest.mark.asyncio
    async def test_start_renders_marker(self):
        frames: list[str] = []
        clock = FakeClock()
        tracker = ReasoningTracker(frames.append, interval=10.0, clock=clock)
        tracker.start()
        try:
            assert tracker.is_running
            assert frames == ["<!--AGENT_REASONING:reasoning:0:[]-->"]
        finally:
            await tracker.stop()

    @pytest.mark.asyncio
    async def test_tick_updates_elapsed_seconds(self):
        frames: list[str] = []
        clock = FakeClock()
        tracker = ReasoningTracker(frames.append, interval=10.0, clock=clock)
        tracker.start()
        clock.advance(3.7)
        tracker.set_content("partial answer")
        tracker.tick()
        await tracker.stop(ReasoningStatus.COMPLETE)
        assert frames[-1] == "<!--AGENT_REASONING:reasoning:3:[]-->\n\npartial answer"
        assert tracker.state.elapsed_seconds == 3
        assert tracker.state.status is ReasoningStatus.COMPLETE
        assert not tracker.is_running

    @pytest.mark.asyncio
    async def test_no_rendering_after_stop(self):
        frames: list[str] = []
        tracker = ReasoningTracker(frames.append, interval=10.0, clock=FakeClock())
        tracker.start()
        await tracker.stop()
        rendered = len(frames)
        tracker.add_step("late step")
        tracker.set_content("late content")
        assert len(frames) == rendered

    @pytest.mark.asyncio
    async def test_full_history_marker_after_completion(self):
        tracker = ReasoningTracker(interval=10.0, clock=FakeClock())
        tracker.start()
        for index in range(MAX_VISIBLE_STEPS + 1):
            tracker.add_step(f"step {index}")
        await tracker.stop(ReasoningStatus.COMPLETE)
        envelope, body = ReasoningEnvelope.parse(tracker.compose("Answer", full_history=True))
        assert envelope is not None
        assert envelope.status is ReasoningStatus.COMPLETE
        assert len(envelope.steps) == MAX_VISIBLE_STEPS + 1
        assert body == "Answer"

    @pytest.mark.asyncio
    async def test_timer_reports_abort(self):
        signal = CancellationSignal()
        fired = asyncio.Event()
        tracker = ReasoningTracker(interval=0.01, signal=signal, on_abort=fired.set)
        tracker.start()
        signal.abort()
        await asyncio.wait_for(fired.wait(), timeout=1.0)
        await tracker.stop()
        assert fired.is_set()

    @pytest.mark.asyncio
    async def test_render_errors_are_contained(self):
        def explode(_text: str) -> None:
            raise RuntimeError("display gone")

        tracker = ReasoningTracker(explode, interval=10.0, clock=FakeClock())
        tracker.start()
        tracker.add_step("still recorded")
        await tracker.stop()
        assert tracker.step_summaries() == ["still recorded"]


# =============================================================================
# Step summaries
# =============================================================================


class TestSummarizeToolCall:
    def test_local_search_query(self):
        assert summarize_tool_call("localSearch", {"query": "piano"}) == 'Searching notes for "piano"'

    def test_local_search_uses_recall_terms(self):
        expansion = QueryExpansion(
            original_query="piano",
            salient_terms=("piano",),
            expanded_queries=("piano lessons",),
            expanded_terms=("keyboard", "piano"),
        )
        assert expansion.recall_terms == ("piano", "piano lessons", "keyboard")
        assert summarize_tool_call("localSearch", {"query": "piano"}, expansion) == (
            'Searching notes for "piano", "piano lessons", "keyboard"'
        )

    def test_local_search_caps_terms(self):
        expansion = QueryExpansion(original_query="q", salient_terms=tuple(f"t{i}" for i in range(8)))
        summary = summarize_tool_call("localSearch", {}, expansion)
        assert summary.endswith('"t5" +2 more')

    def test_local_search_truncates_long_query(self):
        summary = summarize_tool_call("localSearch", {"query": "x" * 80})
        assert summary == f'Searching notes for "{"x" * 50}..."'

    def test_web_search(self):
        assert summarize_tool_call("webSearch", {"query": "weather"}) == 'Searching web for "weather"'
        assert summarize_tool_call("webSearch") == "Searching the web"

    def test_read_note(self):
        assert summarize_tool_call("readNote", {"notePath": "folder/My Note.md"}) == 'Reading "My Note"'

    def test_known_and_unknown_tools(self):
        assert summarize_tool_call("getFileTree") == "Calling file tree"
        assert summarize_tool_call("fetchUrl") == "Fetching URL content"
        assert summarize_tool_call("customTool") == "Calling customTool"


class TestSummarizeToolResult:
    def test_failure(self):
        assert summarize_tool_result("localSearch", False) == "vault search failed"
        assert summarize_tool_result("customTool", False) == "customTool failed"

    def test_local_search_found(self):
        summary = LocalSearchSummary(titles=("a", "b", "c", "d", "e"), count=5)
        assert summarize_tool_result("localSearch", True, search=summary) == "Found 5 notes: a, b, c +2 more"

    def test_local_search_single(self):
        summary = LocalSearchSummary(titles=("a",), count=1)
        assert summarize_tool_result("localSearch", True, search=summary) == "Found 1 note: a"

    def test_local_search_empty(self):
        assert summarize_tool_result("localSearch", True) == "No matching notes found"

    def test_other_tools(self):
        assert summarize_tool_result("webSearch", True) == "Retrieved web search results"
        assert summarize_tool_result("readNote", True, args={"notePath": "a/b.md"}) == 'Read "b"'
        assert summarize_tool_result("customTool", True) == "Completed customTool"


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    def test_first_abort_wins(self):
        signal = CancellationSignal()
        signal.abort(AbortReason.NEW_CHAT)
        signal.abort(AbortReason.USER_STOPPED)
        assert signal.aborted
        assert signal.reason is AbortReason.NEW_CHAT
        assert signal.suppresses_persistence

    def test_user_stop_keeps_persistence(self):
        signal = CancellationSignal()
        signal.abort()
        assert signal.reason is AbortReason.USER_STOPPED
        assert not signal.suppresses_persistence

    def test_raise_if_aborted(self):
        signal = CancellationSignal()
        signal.raise_if_aborted()
        signal.abort(AbortReason.UNMOUNT)
        with pytest.raises(RunCancelled) as info:
            signal.raise_if_aborted()
        assert info.value.reason is AbortReason.UNMOUNT

    @pytest.mark.asyncio
    async def test_wait_returns_reason(self):
        signal = CancellationSignal()
        asyncio.get_running_loop().call_soon(signal.abort, AbortReason.USER_STOPPED)
        assert await asyncio.wait_for(signal.wait(), timeout=1.0) is AbortReason.USER_STOPPED

    def test_terminal_claim_is_single_assignment(self):
        claim = TerminalClaim()
        assert claim.claim("timer") is True
        assert claim.claim("loop") is False
        assert claim.owner == "timer"
        assert claim.claimed
