"""Task dependency graph — the fixed, ordered onboarding sequence.

A task is locked while the task immediately before it is incomplete.
Lock state is never stored; it is recomputed from the current task rows
every time it is asked for.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol


class _HasCompletion(Protocol):
    task_key: str
    is_completed: bool


@dataclass(frozen=True)
class TaskDefinition:
    key: str
    name: str


@dataclass(frozen=True)
class TaskLock:
    """Why a task is locked and what unlocks it."""
    task_key: str
    blocked_by: str
    reason: str
    unlock_hint: str


DEFAULT_TASKS: tuple[TaskDefinition, ...] = (
    TaskDefinition("brand", "Brand Identity"),
    TaskDefinition("venue", "Venue Manager"),
    TaskDefinition("pos", "POS Integration"),
    TaskDefinition("devices", "Device Setup"),
    TaskDefinition("legal", "Legal & Agreements"),
)


def completion_map(tasks: Iterable[_HasCompletion]) -> dict[str, bool]:
    return {t.task_key: bool(t.is_completed) for t in tasks}


class TaskDependencyGraph:
    """Ordered task keys; each key depends on the one before it."""

    def __init__(self, definitions: Iterable[TaskDefinition] = DEFAULT_TASKS):
        self._definitions = tuple(definitions)
        if not self._definitions:
            raise ValueError("A dependency graph needs at least one task")
        self._index = {d.key: i for i, d in enumerate(self._definitions)}
        if len(self._index) != len(self._definitions):
            raise ValueError("Task keys must be unique")

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(d.key for d in self._definitions)

    @property
    def definitions(self) -> tuple[TaskDefinition, ...]:
        return self._definitions

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __len__(self) -> int:
        return len(self._definitions)

    def index(self, key: str) -> int:
        """Position of `key`; KeyError for keys outside the graph."""
        return self._index[key]

    def name(self, key: str) -> str:
        return self._definitions[self._index[key]].name

    def previous_key(self, key: str) -> str | None:
        i = self._index[key]
        return self._definitions[i - 1].key if i > 0 else None

    def next_key(self, key: str) -> str | None:
        i = self._index[key]
        if i + 1 < len(self._definitions):
            return self._definitions[i + 1].key
        return None

    def is_locked(
        self,
        key: str,
        tasks: Iterable[_HasCompletion] | Mapping[str, bool],
    ) -> bool:
        prev = self.previous_key(key)
        if prev is None:
            return False
        completed = tasks if isinstance(tasks, Mapping) else completion_map(tasks)
        # A missing predecessor row counts as incomplete
        return not completed.get(prev, False)

    def lock_info(
        self,
        key: str,
        tasks: Iterable[_HasCompletion] | Mapping[str, bool],
    ) -> TaskLock | None:
        if not self.is_locked(key, tasks):
            return None
        prev = self.previous_key(key)
        prev_name = self.name(prev)
        return TaskLock(
            task_key=key,
            blocked_by=prev,
            reason=f"{self.name(key)} unlocks after {prev_name} is complete",
            unlock_hint=f"Complete {prev_name} first.",
        )


default_graph = TaskDependencyGraph()
