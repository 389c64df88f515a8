"""Step sequencer — presentation timing around a completed task.

    IDLE → COMPLETING → COLLAPSING → ACTIVATING → IDLE

  COMPLETING   the finished task is flagged "just completed"
  COLLAPSING   every panel is closed
  ACTIVATING   the next task (if it exists and is unlocked) is expanded
               and flagged "unlocking"
  IDLE         markers cleared

Holds no persistent state and cannot fail.  Lock state is read through
`is_locked` at the moment ACTIVATING is reached, so it reflects whatever
the progression engine says then.  A new `step_complete` while a run is
in progress cancels that run and starts over.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from partner_portal.config import settings
from partner_portal.onboarding.graph import TaskDependencyGraph, default_graph

logger = logging.getLogger(__name__)


class StepState(str, enum.Enum):
    IDLE = "idle"
    COMPLETING = "completing"
    COLLAPSING = "collapsing"
    ACTIVATING = "activating"


@dataclass(frozen=True)
class SequencerSnapshot:
    state: StepState
    expanded_key: str | None
    just_completed_key: str | None
    unlocking_key: str | None


@dataclass(frozen=True)
class SequencerTimings:
    complete_delay: float
    collapse_delay: float
    activate_delay: float

    @classmethod
    def from_settings(cls) -> "SequencerTimings":
        return cls(
            complete_delay=settings.sequencer_complete_delay,
            collapse_delay=settings.sequencer_collapse_delay,
            activate_delay=settings.sequencer_activate_delay,
        )


LockCheck = Callable[[str], "bool | Awaitable[bool]"]
Listener = Callable[[SequencerSnapshot], None]


class StepSequencer:
    def __init__(
        self,
        is_locked: LockCheck,
        graph: TaskDependencyGraph = default_graph,
        timings: SequencerTimings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        expanded_key: str | None = None,
    ):
        self._is_locked = is_locked
        self._graph = graph
        self._timings = timings or SequencerTimings.from_settings()
        self._sleep = sleep
        self._listeners: list[Listener] = []
        self._run: asyncio.Task | None = None

        self._state = StepState.IDLE
        self._expanded = expanded_key
        self._just_completed: str | None = None
        self._unlocking: str | None = None

    # ── Observation ──────────────────────────────────────────

    @property
    def state(self) -> StepState:
        return self._state

    def snapshot(self) -> SequencerSnapshot:
        return SequencerSnapshot(
            state=self._state,
            expanded_key=self._expanded,
            just_completed_key=self._just_completed,
            unlocking_key=self._unlocking,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ── Manual panel control ─────────────────────────────────

    def expand(self, key: str | None) -> None:
        """User opened (or closed, with None) a panel while idle."""
        if key is not None:
            self._graph.index(key)
        self._expanded = key
        self._emit()

    # ── Transitions ──────────────────────────────────────────

    def step_complete(self, key: str) -> asyncio.Task:
        """Start the completion sequence for `key`; returns the running task."""
        self._graph.index(key)
        if self._run is not None and not self._run.done():
            self._run.cancel()
        self._set(StepState.COMPLETING, just_completed=key, unlocking=None)
        self._run = asyncio.ensure_future(self._sequence(key))
        return self._run

    async def wait_idle(self) -> None:
        if self._run is not None:
            try:
                await self._run
            except asyncio.CancelledError:
                pass

    async def _sequence(self, key: str) -> None:
        await self._sleep(self._timings.complete_delay)

        self._set(StepState.COLLAPSING, expanded=None)
        try:
            await self._sleep(self._timings.collapse_delay)

            next_key = self._graph.next_key(key)
            if next_key is not None and not await self._check_locked(next_key):
                self._set(StepState.ACTIVATING, expanded=next_key, unlocking=next_key)
                await self._sleep(self._timings.activate_delay)
            else:
                logger.debug("No unlocked step after %s; staying collapsed", key)
        finally:
            # Cancelled runs are superseded by the run that cancelled them
            if not self._superseded():
                self._set(StepState.IDLE, just_completed=None, unlocking=None)

    def _superseded(self) -> bool:
        return self._run is not None and self._run is not asyncio.current_task()

    async def _check_locked(self, key: str) -> bool:
        """Lock state of `key`; a failed check counts as locked."""
        try:
            result = self._is_locked(key)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception:
            logger.warning("Lock check for step %s failed; not activating it", key, exc_info=True)
            return True
        return bool(result)

    _UNSET = object()

    def _set(self, state: StepState, expanded=_UNSET, just_completed=_UNSET, unlocking=_UNSET) -> None:
        self._state = state
        if expanded is not StepSequencer._UNSET:
            self._expanded = expanded
        if just_completed is not StepSequencer._UNSET:
            self._just_completed = just_completed
        if unlocking is not StepSequencer._UNSET:
            self._unlocking = unlocking
        self._emit()

    def _emit(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)
