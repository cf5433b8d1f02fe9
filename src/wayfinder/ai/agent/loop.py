"""Agent loop controller: reason, call tools, observe, respond.

One :class:`AgentLoopController` drives any number of runs, but every run owns
its own transcript, decoder, accumulator and reasoning tracker. The only
shared collaborators (model client, tool dispatcher, transcript store) are
injected at construction and treated as read-only during a run.

A run moves through these states::

    idle -> reasoning <-> tool_execution -> (reasoning | final)

and exits early to ``aborted``, ``timed_out`` or ``max_iterations``. A
non-cancellation error re-runs the request through the non-agentic
:class:`~wayfinder.ai.agent.fallback.SimpleAnswerRunner`; when that fails as
well the run ends in ``error`` with both messages combined.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_incrementing

from ..citations import add_fallback_sources, process_inline_citations
from ..client import ModelClient, TokenCounterRegistry
from ..errors import FallbackFailedError, is_cancellation, is_overloaded_error
from ..streaming import (
    THINK_OPEN,
    DecodedResponse,
    StreamingDecoder,
    ToolCallAccumulator,
    TruncationPolicy,
    strip_think_blocks,
)
from ..types import (
    AgentRunResult,
    ConversationMessage,
    NativeToolCall,
    SourceEntry,
    TokenUsage,
    ToolExecutionResult,
)
from .cancellation import CancellationSignal, RunCancelled, TerminalClaim
from .fallback import SimpleAnswerRunner
from .reasoning import ReasoningStatus, ReasoningTracker
from .responses import TranscriptStore, append_interrupted_notice, finalize_response, render_error
from .search import (
    MAX_LOCAL_SEARCH_CONTEXT_CHARS,
    QueryExpander,
    deduplicate_sources,
    ensure_context_before_question,
    process_local_search_result,
)
from .summaries import LOCAL_SEARCH_TOOL, LocalSearchSummary, QueryExpansion, summarize_tool_call, summarize_tool_result
from .tools import ToolDispatcher

__all__ = [
    "LoopState",
    "LoopConfig",
    "AgentLoopController",
    "UpdateCallback",
    "max_iterations_notice",
    "time_limit_notice",
]

LOGGER = logging.getLogger(__name__)

# Receives the full display text each time it changes
UpdateCallback = Callable[[str], None]
SleepFn = Callable[[float], Any]


def max_iterations_notice(max_iterations: int) -> str:
    return (
        f"\n\nI've reached the maximum number of iterations ({max_iterations}) for this task. "
        "I attempted to gather information using various tools but couldn't complete the analysis "
        "within the iteration limit. You may want to try a more specific question or break down "
        "your request into smaller parts."
    )


def time_limit_notice(seconds: float) -> str:
    return (
        f"\n\nI've reached the time limit ({seconds:g}s) for this task. "
        "I attempted to gather information using various tools but couldn't complete the analysis "
        "within the time limit. You may want to try a more specific question or break down "
        "your request into smaller parts."
    )


class LoopState(str, Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    TOOL_EXECUTION = "tool_execution"
    FINAL_RESPONSE = "final"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"
    MAX_ITERATIONS = "max_iterations"
    FALLBACK_RECOVERY = "fallback"
    ERROR_REPORTED = "error"


@dataclass(slots=True, frozen=True)
class LoopConfig:
    """Limits and presentation knobs for agent runs.

    Attributes:
        max_iterations: Model invocations allowed per run.
        loop_timeout: Wall-clock budget in seconds, checked between iterations.
        max_retries: Retries for provider overload errors.
        retry_base_delay: Backoff step in seconds (1x, 2x, ...).
        enable_inline_citations: Post-process citations in the final answer.
        exclude_thinking: Drop reasoning content while decoding.
        reveal_chunk_size: Characters added per reveal step of the final answer.
        reveal_delay: Pause between reveal steps.
        reasoning_tick_interval: Reasoning display refresh interval.
        temperature: Sampling temperature forwarded to the model.
        max_tokens: Completion token cap forwarded to the model.
        model_name: Model used for token estimates.
        max_context_chars: Budget for local-search document content.
        truncation_policy: Early-truncation policy for the decoder.
    """

    max_iterations: int = 4
    loop_timeout: float = 300.0
    max_retries: int = 2
    retry_base_delay: float = 1.0
    enable_inline_citations: bool = True
    exclude_thinking: bool = False
    reveal_chunk_size: int = 20
    reveal_delay: float = 0.0
    reasoning_tick_interval: float = 0.1
    temperature: float | None = None
    max_tokens: int | None = None
    model_name: str | None = None
    max_context_chars: int = MAX_LOCAL_SEARCH_CONTEXT_CHARS
    truncation_policy: TruncationPolicy | None = None


@dataclass(slots=True)
class _TurnOutput:
    decoded: DecodedResponse
    tool_calls: list[NativeToolCall]


@dataclass(slots=True)
class _RunState:
    """Mutable state owned by a single run."""

    question: str
    signal: CancellationSignal
    tracker: ReasoningTracker
    on_update: UpdateCallback | None
    started_at: float
    claim: TerminalClaim = field(default_factory=TerminalClaim)
    state: LoopState = LoopState.IDLE
    messages: list[ConversationMessage] = field(default_factory=list)
    sources: list[SourceEntry] = field(default_factory=list)
    expansions: dict[str, QueryExpansion] = field(default_factory=dict)
    iteration: int = 0
    partial: str = ""
    interrupted_text: str | None = None
    was_truncated: bool = False
    token_usage: TokenUsage | None = None
    tool_results: int = 0


class AgentLoopController:
    """Runs the tool-using agent loop for one question at a time."""

    def __init__(
        self,
        client: ModelClient,
        dispatcher: ToolDispatcher,
        *,
        config: LoopConfig | None = None,
        fallback: SimpleAnswerRunner | None = None,
        store: TranscriptStore | None = None,
        query_expander: QueryExpander | None = None,
        telemetry: Any | None = None,
        token_registry: TokenCounterRegistry | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._config = config or LoopConfig()
        self._fallback = fallback
        self._store = store
        self._query_expander = query_expander
        self._telemetry = telemetry
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._sleep = sleep
        self._clock = clock
        self._last_state = LoopState.IDLE

    @property
    def config(self) -> LoopConfig:
        return self._config

    @property
    def state(self) -> LoopState:
        """Terminal state of the most recent run."""

        return self._last_state

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def run(
        self,
        question: str,
        *,
        history: Sequence[ConversationMessage] = (),
        system_prompt: str = "",
        signal: CancellationSignal | None = None,
        on_update: UpdateCallback | None = None,
    ) -> AgentRunResult:
        """Answer ``question``, returning the final display text and metadata."""

        signal = signal or CancellationSignal()
        # Callbacks resolve `run` lazily; the tracker only fires after start()
        tracker = ReasoningTracker(
            lambda text: self._emit(run, text),
            interval=self._config.reasoning_tick_interval,
            signal=signal,
            on_abort=lambda: self._claim_interrupted(run, "timer"),
            clock=self._clock,
        )
        run = _RunState(
            question=question,
            signal=signal,
            tracker=tracker,
            on_update=on_update,
            started_at=self._clock(),
        )
        if system_prompt:
            run.messages.append(ConversationMessage.system(system_prompt))
        run.messages.extend(history)
        run.messages.append(ConversationMessage.user(question))

        self._track("agent.run_started", max_iterations=self._config.max_iterations)
        try:
            result = await self._run_guarded(run, history=history, system_prompt=system_prompt)
        finally:
            if run.tracker.is_running:
                await run.tracker.stop(ReasoningStatus.COLLAPSED)
        self._last_state = run.state
        self._track(
            "agent.run_finished",
            status=result.status,
            iterations=result.iterations,
            fallback_used=result.fallback_used,
            sources=len(result.sources),
            was_truncated=result.was_truncated,
        )
        return result

    async def _run_guarded(
        self,
        run: _RunState,
        *,
        history: Sequence[ConversationMessage],
        system_prompt: str,
    ) -> AgentRunResult:
        try:
            return await self._run_agentic(run)
        except RunCancelled:
            return await self._finish_aborted(run)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if is_cancellation(exc) or run.signal.aborted:
                return await self._finish_aborted(run)
            LOGGER.exception("Agent loop failed; falling back to the simple answer path")
            return await self._recover(run, exc, history=history, system_prompt=system_prompt)

    # ------------------------------------------------------------------
    # Agentic path
    # ------------------------------------------------------------------
    async def _run_agentic(self, run: _RunState) -> AgentRunResult:
        config = self._config
        run.state = LoopState.REASONING
        run.tracker.start()
        tools = self._dispatcher.available_tools()

        while run.iteration < config.max_iterations:
            run.signal.raise_if_aborted()
            if self._clock() - run.started_at >= config.loop_timeout:
                LOGGER.warning("Agent loop reached its time limit (%gs)", config.loop_timeout)
                run.state = LoopState.TIMED_OUT
                return await self._finish_limit(run, time_limit_notice(config.loop_timeout))

            run.iteration += 1
            run.state = LoopState.REASONING
            self._log_transcript_size(run)
            turn = await self._invoke_model(run, tools)
            run.signal.raise_if_aborted()

            run.was_truncated = run.was_truncated or turn.decoded.was_truncated
            run.token_usage = turn.decoded.token_usage or self._estimate_usage(run, turn.decoded.content)

            if not turn.tool_calls:
                run.messages.append(ConversationMessage.assistant(turn.decoded.content))
                LOGGER.debug("Iteration %d produced the final answer", run.iteration)
                return await self._finish_final(run, turn.decoded.content)

            run.state = LoopState.TOOL_EXECUTION
            run.messages.append(
                ConversationMessage.assistant(turn.decoded.visible_text, tool_calls=turn.tool_calls)
            )
            LOGGER.debug("Iteration %d requested %d tool call(s)", run.iteration, len(turn.tool_calls))
            for call in turn.tool_calls:
                run.signal.raise_if_aborted()
                await self._execute_call(run, call)

        LOGGER.warning("Agent loop reached max iterations (%d)", config.max_iterations)
        run.state = LoopState.MAX_ITERATIONS
        return await self._finish_limit(run, max_iterations_notice(config.max_iterations))

    async def _invoke_model(self, run: _RunState, tools: list[dict[str, Any]]) -> _TurnOutput:
        async for attempt in self._retrying():
            with attempt:
                return await self._stream_turn(run, tools)
        raise AssertionError("retry loop exited without a result")  # pragma: no cover

    def _retrying(self) -> AsyncRetrying:
        base = max(0.0, self._config.retry_base_delay)
        return AsyncRetrying(
            stop=stop_after_attempt(max(0, self._config.max_retries) + 1),
            wait=wait_incrementing(start=base, increment=base),
            retry=retry_if_exception(is_overloaded_error),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        LOGGER.warning(
            "Provider overloaded; retrying (attempt %d/%d): %s",
            retry_state.attempt_number + 1,
            self._config.max_retries + 1,
            error,
        )

    async def _stream_turn(self, run: _RunState, tools: list[dict[str, Any]]) -> _TurnOutput:
        """Stream one model response through a fresh decoder and accumulator."""

        accumulator = ToolCallAccumulator()

        def on_decoded(text: str) -> None:
            run.partial = text
            run.tracker.set_content(strip_think_blocks(text))

        decoder = StreamingDecoder(
            on_decoded,
            exclude_thinking=self._config.exclude_thinking,
            truncation_policy=self._config.truncation_policy,
            accumulator=accumulator,
        )
        stream = self._client.stream_chat(
            run.messages,
            tools or None,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
        )
        try:
            async for chunk in stream:
                if run.signal.aborted:
                    break
                decoder.process_chunk(chunk)
                if decoder.stopped:
                    break
        finally:
            decoded = decoder.close()
            await _close_stream(stream)

        if run.signal.aborted:
            return _TurnOutput(decoded=decoded, tool_calls=[])
        return _TurnOutput(decoded=decoded, tool_calls=accumulator.finalize())

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------
    async def _execute_call(self, run: _RunState, call: NativeToolCall) -> None:
        expansion: QueryExpansion | None = None
        if call.name == LOCAL_SEARCH_TOOL:
            call, expansion = await self._pre_expand(run, call)

        background = self._dispatcher.is_background(call.name)
        if not background:
            run.tracker.add_step(summarize_tool_call(call.name, call.arguments, expansion), call.name)

        result = await self._dispatcher.dispatch(call, user_message=run.question)
        search: LocalSearchSummary | None = None
        if call.name == LOCAL_SEARCH_TOOL:
            result, search = self._apply_local_search(run, call, result, expansion)

        if not background:
            run.tracker.add_step(
                summarize_tool_result(call.name, result.success, search=search, args=call.arguments),
                call.name,
            )
        run.messages.append(ConversationMessage.tool(result.result, call.id, call.name))
        run.tool_results += 1
        LOGGER.info(
            "Tool %s finished (success=%s, %.0fms)", call.name, result.success, result.duration_ms
        )
        self._track(
            "agent.tool_executed",
            tool=call.name,
            success=result.success,
            duration_ms=round(result.duration_ms, 1),
            iteration=run.iteration,
        )

    async def _pre_expand(
        self,
        run: _RunState,
        call: NativeToolCall,
    ) -> tuple[NativeToolCall, QueryExpansion | None]:
        query = call.arguments.get("query")
        if self._query_expander is None or not isinstance(query, str) or not query.strip():
            return call, None

        expansion = run.expansions.get(query)
        if expansion is None:
            try:
                expansion = await self._query_expander.expand(query)
            except Exception:
                LOGGER.warning("Query expansion failed for %r; searching without it", query, exc_info=True)
                return call, None
            run.expansions[query] = expansion

        arguments = dict(call.arguments)
        arguments.setdefault("salientTerms", list(expansion.salient_terms))
        arguments["_preExpandedQuery"] = {
            "originalQuery": expansion.original_query,
            "salientTerms": list(expansion.salient_terms),
            "expandedQueries": list(expansion.expanded_queries),
            "expandedTerms": list(expansion.expanded_terms),
            "recallTerms": list(expansion.recall_terms),
        }
        return call.with_arguments(arguments), expansion

    def _apply_local_search(
        self,
        run: _RunState,
        call: NativeToolCall,
        result: ToolExecutionResult,
        expansion: QueryExpansion | None,
    ) -> tuple[ToolExecutionResult, LocalSearchSummary]:
        time_range = call.arguments.get("timeRange")
        outcome = process_local_search_result(
            result,
            time_range=time_range if isinstance(time_range, str) else None,
            max_chars=self._config.max_context_chars,
        )
        run.sources.extend(outcome.sources)
        payload = ensure_context_before_question(
            outcome.formatted_for_llm,
            run.question,
            citation_reminder=self._config.enable_inline_citations,
        )
        updated = replace(
            result,
            result=payload,
            display_result=outcome.display_result or result.display_result,
        )
        return updated, outcome.summary(expansion)

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------
    async def _finish_final(self, run: _RunState, content: str) -> AgentRunResult:
        await run.tracker.stop(ReasoningStatus.COMPLETE)
        sources = tuple(deduplicate_sources(run.sources))
        answer = self._post_process(content, sources)
        display = run.tracker.compose(answer, full_history=True) if run.tracker.state.history else answer
        await self._reveal(run, display)
        run.state = LoopState.FINAL_RESPONSE
        return await self._build_result(run, display, stored_text=answer, sources=sources)

    async def _finish_limit(self, run: _RunState, notice: str) -> AgentRunResult:
        await run.tracker.stop(ReasoningStatus.COMPLETE)
        summaries = run.tracker.step_summaries()
        body = notice.lstrip("\n")
        if summaries:
            body += "\n\n" + "\n".join(f"- {summary}" for summary in summaries)
        display = run.tracker.compose(body, full_history=True)
        run.messages.append(ConversationMessage.assistant(body))
        self._emit(run, display)
        sources = tuple(deduplicate_sources(run.sources))
        return await self._build_result(run, display, stored_text=body, sources=sources)

    async def _finish_aborted(self, run: _RunState) -> AgentRunResult:
        LOGGER.info("Agent run aborted (%s)", run.signal.reason.value if run.signal.reason else "unknown")
        self._claim_interrupted(run, "loop")
        await run.tracker.stop(ReasoningStatus.COLLAPSED)
        run.state = LoopState.ABORTED
        text = run.interrupted_text or append_interrupted_notice(self._visible_partial(run))
        sources = tuple(deduplicate_sources(run.sources))
        return await self._build_result(run, text, stored_text=None, sources=sources)

    def _claim_interrupted(self, run: _RunState, owner: str) -> None:
        """Emit the interrupted notice unless another path already did."""

        if not run.claim.claim(owner):
            return
        run.interrupted_text = append_interrupted_notice(self._visible_partial(run))
        LOGGER.debug("Interrupted notice emitted by %s", owner)
        self._emit_terminal(run, run.interrupted_text)

    async def _recover(
        self,
        run: _RunState,
        error: Exception,
        *,
        history: Sequence[ConversationMessage],
        system_prompt: str,
    ) -> AgentRunResult:
        await run.tracker.stop(ReasoningStatus.COLLAPSED)
        if self._fallback is None:
            return self._report_error(run, error)

        run.state = LoopState.FALLBACK_RECOVERY
        self._track("agent.fallback", error=type(error).__name__, iteration=run.iteration)
        LOGGER.warning("Retrying request through the simple answer path: %s", error)
        try:
            fallback = await self._fallback.run(
                run.question,
                system_prompt=system_prompt,
                history=history,
                signal=run.signal,
                on_update=lambda text: self._emit(run, strip_think_blocks(text)),
            )
        except asyncio.CancelledError:
            raise
        except Exception as fallback_error:
            if run.signal.aborted:
                return await self._finish_aborted(run)
            LOGGER.error("Simple answer path also failed: %s", fallback_error)
            return self._report_error(run, FallbackFailedError.from_errors(error, fallback_error))

        if run.signal.aborted or fallback.status == LoopState.ABORTED.value:
            run.partial = fallback.text
            return await self._finish_aborted(run)

        run.was_truncated = run.was_truncated or fallback.was_truncated
        run.token_usage = fallback.token_usage
        sources = tuple(deduplicate_sources([*run.sources, *fallback.sources]))
        answer = self._post_process(fallback.text, sources)
        await self._reveal(run, answer)
        run.state = LoopState.FINAL_RESPONSE
        result = await self._build_result(run, answer, stored_text=answer, sources=sources)
        return replace(result, fallback_used=True)

    def _report_error(self, run: _RunState, error: BaseException) -> AgentRunResult:
        run.state = LoopState.ERROR_REPORTED
        message = render_error(error)
        partial = self._visible_partial(run)
        text = f"{partial}\n\n{message}" if partial else message
        self._emit_terminal(run, text)
        return AgentRunResult(
            text=text,
            was_truncated=run.was_truncated,
            token_usage=run.token_usage,
            sources=tuple(deduplicate_sources(run.sources)),
            status=run.state.value,
            iterations=run.iteration,
            fallback_used=self._fallback is not None,
            error=message,
        )

    async def _build_result(
        self,
        run: _RunState,
        display: str,
        *,
        stored_text: str | None,
        sources: tuple[SourceEntry, ...],
    ) -> AgentRunResult:
        finalized = await finalize_response(
            display,
            user_message=run.question,
            signal=run.signal,
            store=self._store,
            sources=sources,
            was_truncated=run.was_truncated,
            token_usage=run.token_usage,
            stored_text=stored_text,
        )
        return AgentRunResult(
            text=finalized.display_text,
            was_truncated=run.was_truncated,
            token_usage=run.token_usage,
            sources=sources,
            status=run.state.value,
            iterations=run.iteration,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _post_process(self, content: str, sources: Sequence[SourceEntry]) -> str:
        enabled = self._config.enable_inline_citations
        with_sources = add_fallback_sources(content, sources, enabled)
        return process_inline_citations(with_sources, enabled)

    async def _reveal(self, run: _RunState, text: str) -> None:
        """Emit ``text`` progressively in fixed-size increments."""

        size = max(1, self._config.reveal_chunk_size)
        for end in range(size, len(text) + size, size):
            if run.signal.aborted:
                return
            self._emit(run, text[:end])
            if self._config.reveal_delay > 0 and end < len(text):
                await self._sleep(self._config.reveal_delay)
            else:
                await asyncio.sleep(0)

    def _emit(self, run: _RunState, text: str) -> None:
        if run.signal.aborted or run.on_update is None:
            return
        try:
            run.on_update(text)
        except Exception:
            LOGGER.debug("Update callback raised exception", exc_info=True)

    def _emit_terminal(self, run: _RunState, text: str) -> None:
        if run.on_update is None:
            return
        try:
            run.on_update(text)
        except Exception:
            LOGGER.debug("Update callback raised exception", exc_info=True)

    @staticmethod
    def _visible_partial(run: _RunState) -> str:
        visible = strip_think_blocks(run.partial)
        open_index = visible.find(THINK_OPEN.strip())
        if open_index != -1:
            visible = visible[:open_index]
        return visible.strip()

    def _estimate_usage(self, run: _RunState, content: str) -> TokenUsage:
        model = self._config.model_name
        prompt = self._token_registry.count_messages(model, run.messages)
        completion = self._token_registry.count(model, content)
        return TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
            estimated=True,
        )

    def _log_transcript_size(self, run: _RunState) -> None:
        if not LOGGER.isEnabledFor(logging.DEBUG):
            return
        tokens = self._token_registry.count_messages(self._config.model_name, run.messages)
        LOGGER.debug(
            "Iteration %d/%d: %d message(s), ~%d prompt tokens",
            run.iteration,
            self._config.max_iterations,
            len(run.messages),
            tokens,
        )

    def _track(self, name: str, **props: Any) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry.track_event(name, **props)
        except Exception:
            LOGGER.debug("Telemetry tracking raised exception", exc_info=True)


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.debug("Closing model stream raised exception", exc_info=True)
