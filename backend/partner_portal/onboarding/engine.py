"""Progression engine — the ordered, derived view of a tenant's tasks.

Pure functions over the task rows and the dependency graph.  Nothing
here is cached: every read recomputes locks and progress from the rows
it was given.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from partner_portal.models.tenant import TenantPhase
from partner_portal.onboarding.graph import TaskDependencyGraph, default_graph
from partner_portal.onboarding.store import TaskDocument

PHASE_STATUS: dict[TenantPhase, str] = {
    TenantPhase.ONBOARDING: "onboarding",
    TenantPhase.REVIEWING: "reviewing",
    TenantPhase.PILOT_LIVE: "live",
    TenantPhase.CONTRACTED: "live",
}


@dataclass(frozen=True)
class TaskView:
    key: str
    name: str
    is_completed: bool
    is_locked: bool
    completed_at: datetime | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProgressView:
    tasks: tuple[TaskView, ...]
    progress: int
    status: str
    current_key: str | None

    @property
    def all_completed(self) -> bool:
        return bool(self.tasks) and all(t.is_completed for t in self.tasks)

    def task(self, key: str) -> TaskView:
        for t in self.tasks:
            if t.key == key:
                return t
        raise KeyError(key)


def calculate_progress(completed: int, total: int) -> int:
    """Whole-number percentage, halves rounded up."""
    if total <= 0:
        return 0
    return int(math.floor(100 * completed / total + 0.5))


def status_for_phase(phase: TenantPhase | str) -> str:
    return PHASE_STATUS[TenantPhase(phase)]


def build_task_views(
    tasks: Iterable[TaskDocument],
    graph: TaskDependencyGraph = default_graph,
) -> tuple[TaskView, ...]:
    """Task views in graph order; keys with no row show as empty and incomplete."""
    by_key = {t.task_key: t for t in tasks if t.task_key in graph}
    completed = {key: doc.is_completed for key, doc in by_key.items()}

    views = []
    for definition in graph.definitions:
        doc = by_key.get(definition.key)
        views.append(
            TaskView(
                key=definition.key,
                name=doc.task_name if doc else definition.name,
                is_completed=doc.is_completed if doc else False,
                is_locked=graph.is_locked(definition.key, completed),
                completed_at=doc.completed_at if doc else None,
                data=dict(doc.data) if doc else {},
            )
        )
    return tuple(views)


def build_progress_view(
    tasks: Sequence[TaskDocument],
    phase: TenantPhase | str,
    graph: TaskDependencyGraph = default_graph,
) -> ProgressView:
    views = build_task_views(tasks, graph)
    done = sum(1 for v in views if v.is_completed)
    current = next((v.key for v in views if not v.is_completed), None)
    return ProgressView(
        tasks=views,
        progress=calculate_progress(done, len(views)),
        status=status_for_phase(phase),
        current_key=current,
    )
