"""Cooperative cancellation for agent runs."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

__all__ = ["AbortReason", "CancellationSignal", "TerminalClaim", "RunCancelled"]

LOGGER = logging.getLogger(__name__)


class AbortReason(str, Enum):
    """Why a run was cancelled."""

    # The user started a new conversation; nothing from this run is persisted.
    NEW_CHAT = "new-chat"
    USER_STOPPED = "user-stopped"
    UNMOUNT = "unmount"


class RunCancelled(Exception):
    """Raised inside a run to unwind once cancellation has been observed."""

    def __init__(self, reason: AbortReason | None = None) -> None:
        super().__init__(f"Run cancelled ({reason.value if reason else 'unknown'})")
        self.reason = reason


class CancellationSignal:
    """Shared boolean-plus-reason flag that callers may set at any time.

    The first :meth:`abort` wins; later calls keep the original reason.
    """

    def __init__(self) -> None:
        self._reason: AbortReason | None = None
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> AbortReason | None:
        return self._reason

    @property
    def suppresses_persistence(self) -> bool:
        return self._reason is AbortReason.NEW_CHAT

    def abort(self, reason: AbortReason = AbortReason.USER_STOPPED) -> None:
        if self._reason is not None:
            return
        LOGGER.debug("Cancellation requested: %s", reason.value)
        self._reason = reason
        self._event.set()

    async def wait(self) -> AbortReason | None:
        await self._event.wait()
        return self._reason

    def raise_if_aborted(self) -> None:
        if self._reason is not None:
            raise RunCancelled(self._reason)


class TerminalClaim:
    """Single-assignment flag deciding who emits a terminal message.

    Both the stream path and the display timer may observe cancellation.
    Whoever calls :meth:`claim` first owns the terminal emission; every later
    caller gets ``False`` and must stay silent. Claims never await, so the
    check-and-set is atomic with respect to the event loop.
    """

    __slots__ = ("_owner",)

    def __init__(self) -> None:
        self._owner: str | None = None

    @property
    def claimed(self) -> bool:
        return self._owner is not None

    @property
    def owner(self) -> str | None:
        return self._owner

    def claim(self, owner: str) -> bool:
        if self._owner is not None:
            return False
        self._owner = owner
        return True
