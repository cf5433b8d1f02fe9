"""Reasoning display state and its inline marker protocol.

While the agent works, a timer re-renders a single-line marker followed by
the visible content streamed so far::

    <!--AGENT_REASONING:reasoning:3:["Searching notes for \\"piano\\"","Found 2 notes: a, b"]-->

The marker travels in the same text channel as the answer, so a display
layer can parse it back with :meth:`ReasoningEnvelope.parse`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .cancellation import CancellationSignal

__all__ = [
    "MAX_VISIBLE_STEPS",
    "ReasoningStatus",
    "ReasoningStep",
    "ReasoningState",
    "ReasoningEnvelope",
    "ReasoningTracker",
    "strip_reasoning_marker",
]

LOGGER = logging.getLogger(__name__)

MAX_VISIBLE_STEPS = 4
_MARKER_PREFIX = "<!--AGENT_REASONING:"
_MARKER_RE = re.compile(r"<!--AGENT_REASONING:(\w+):(\d+):(.+?)-->", re.DOTALL)


class ReasoningStatus(str, Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    COLLAPSED = "collapsed"
    COMPLETE = "complete"


@dataclass(slots=True, frozen=True)
class ReasoningStep:
    timestamp: float
    summary: str
    tool_name: str | None = None


@dataclass(slots=True)
class ReasoningState:
    """Mutable reasoning state for one agent run.

    ``steps`` is the rolling window shown while reasoning; ``history`` keeps
    every step for the completed view.
    """

    status: ReasoningStatus = ReasoningStatus.IDLE
    start_time: float | None = None
    elapsed_seconds: int = 0
    steps: list[ReasoningStep] = field(default_factory=list)
    history: list[ReasoningStep] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class ReasoningEnvelope:
    """Typed form of the inline reasoning marker."""

    status: ReasoningStatus
    elapsed_seconds: int
    steps: tuple[str, ...] = ()

    def serialize(self) -> str:
        if self.status is ReasoningStatus.IDLE:
            return ""
        steps_json = json.dumps(list(self.steps), ensure_ascii=False)
        return f"{_MARKER_PREFIX}{self.status.value}:{self.elapsed_seconds}:{steps_json}-->"

    @classmethod
    def from_state(cls, state: ReasoningState, *, full_history: bool = False) -> ReasoningEnvelope:
        source = state.history if full_history else state.steps
        return cls(
            status=state.status,
            elapsed_seconds=state.elapsed_seconds,
            steps=tuple(step.summary for step in source),
        )

    @classmethod
    def parse(cls, content: str) -> tuple[ReasoningEnvelope | None, str]:
        """Extract the first marker from ``content``.

        Returns ``(envelope, content_after)``. Malformed step JSON yields an
        envelope with no steps; unknown statuses or a missing marker yield
        ``(None, content)``.
        """

        match = _MARKER_RE.search(content or "")
        if match is None:
            return None, content
        status_text, elapsed_text, steps_json = match.groups()
        try:
            status = ReasoningStatus(status_text)
        except ValueError:
            return None, content
        try:
            decoded = json.loads(steps_json)
        except ValueError:
            decoded = []
        if not isinstance(decoded, list):
            decoded = []
        steps = tuple(str(item) for item in decoded)
        remainder = (content[: match.start()] + content[match.end():]).strip()
        return cls(status=status, elapsed_seconds=int(elapsed_text), steps=steps), remainder


def strip_reasoning_marker(content: str) -> str:
    """Return ``content`` without any reasoning markers."""

    if _MARKER_PREFIX not in (content or ""):
        return content
    return _MARKER_RE.sub("", content).strip()


# Render callback receives the full display text (marker + content)
RenderCallback = Callable[[str], None]
# Abort callback runs once when the timer observes cancellation first
AbortCallback = Callable[[], None]


class ReasoningTracker:
    """Drives the reasoning display for a single agent run.

    A background task ticks every ``interval`` seconds while the status is
    ``reasoning``. Each tick recomputes the elapsed time and renders the
    marker plus whatever visible content has streamed so far. The tick also
    watches ``signal`` and invokes ``on_abort`` when cancellation shows up.
    """

    def __init__(
        self,
        render: RenderCallback | None = None,
        *,
        interval: float = 0.1,
        signal: CancellationSignal | None = None,
        on_abort: AbortCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._render = render
        self._interval = max(0.01, float(interval))
        self._signal = signal
        self._on_abort = on_abort
        self._clock = clock
        self._state = ReasoningState()
        self._content = ""
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ReasoningState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Reset state and begin ticking."""

        self._cancel_task()
        self._state = ReasoningState(
            status=ReasoningStatus.REASONING,
            start_time=self._clock(),
        )
        self._content = ""
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.render()

    async def stop(self, status: ReasoningStatus = ReasoningStatus.COLLAPSED) -> None:
        """Stop ticking and freeze the state with ``status``."""

        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._state.status is not ReasoningStatus.IDLE:
            self.tick(render=False)
            self._state.status = status

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while self._state.status is ReasoningStatus.REASONING:
            await asyncio.sleep(self._interval)
            if self._signal is not None and self._signal.aborted:
                if self._on_abort is not None:
                    try:
                        self._on_abort()
                    except Exception:
                        LOGGER.debug("Reasoning abort callback raised exception", exc_info=True)
                return
            self.tick()

    # ------------------------------------------------------------------
    # State updates
    # ------------------------------------------------------------------
    def tick(self, *, render: bool = True) -> None:
        start = self._state.start_time
        if start is not None:
            self._state.elapsed_seconds = max(0, int(self._clock() - start))
        if render:
            self.render()

    def add_step(self, summary: str, tool_name: str | None = None, *, display_only: bool = False) -> None:
        """Record a step in the full history and, unless ``display_only``, the rolling window."""

        step = ReasoningStep(timestamp=time.time(), summary=summary, tool_name=tool_name)
        self._state.history.append(step)
        if not display_only:
            self._state.steps.append(step)
            if len(self._state.steps) > MAX_VISIBLE_STEPS:
                del self._state.steps[: len(self._state.steps) - MAX_VISIBLE_STEPS]
        self.render()

    def set_content(self, content: str) -> None:
        self._content = content
        self.render()

    def step_summaries(self) -> list[str]:
        return [step.summary for step in self._state.history]

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def marker(self, *, full_history: bool = False) -> str:
        return ReasoningEnvelope.from_state(self._state, full_history=full_history).serialize()

    def compose(self, content: str | None = None, *, full_history: bool = False) -> str:
        marker = self.marker(full_history=full_history)
        body = self._content if content is None else content
        if not marker:
            return body
        if not body:
            return marker
        return f"{marker}\n\n{body}"

    def render(self) -> None:
        if self._render is None or self._state.status is not ReasoningStatus.REASONING:
            return
        try:
            self._render(self.compose())
        except Exception:
            LOGGER.debug("Reasoning render callback raised exception", exc_info=True)
