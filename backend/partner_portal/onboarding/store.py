"""Task document store — atomic partial updates of a task's `data` document.

Several writers (field autosave, upload callback, explicit save, "mark
complete") race on the same task document.  `merge_task_data` is the only
way to change one, and each call is a single indivisible
read-modify-write:

  1. load the row (an empty document if none exists yet)
  2. shallow-merge `merge_map` into `data`
  3. delete `remove_keys` (removal beats merge within one call)
  4. stamp completion if asked (first `completed_at` wins)
  5. write it back, or fail without writing anything

Serialization happens in two layers:

  - in-process: a KeyedLock per (tenant_id, task_key) so writers in the
    same worker queue up instead of colliding
  - cross-process: `SELECT ... FOR UPDATE` where supported, plus a
    `version` compare-and-swap on the UPDATE.  A writer that loses the
    swap rolls back and retries from a fresh read.

Calls for different (tenant_id, task_key) pairs never wait on each other.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_portal.config import settings
from partner_portal.middleware.exceptions import StoreUnavailableError, WriteConflictError
from partner_portal.models.onboarding_task import OnboardingTask
from partner_portal.models.tenant import utcnow
from partner_portal.onboarding.graph import TaskDependencyGraph, default_graph
from partner_portal.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskDocument:
    """Detached snapshot of one task row."""
    tenant_id: str
    task_key: str
    task_name: str
    is_completed: bool
    completed_at: datetime | None
    data: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @classmethod
    def from_row(cls, row: OnboardingTask) -> "TaskDocument":
        return cls(
            tenant_id=row.tenant_id,
            task_key=row.task_key,
            task_name=row.task_name,
            is_completed=bool(row.is_completed),
            completed_at=row.completed_at,
            data=dict(row.data or {}),
            version=row.version or 0,
        )


def apply_merge(
    document: Mapping[str, Any] | None,
    merge_map: Mapping[str, Any],
    remove_keys: Iterable[str],
) -> dict[str, Any]:
    """Shallow merge then removal; returns a new dict."""
    merged = dict(document or {})
    merged.update(merge_map)
    for key in remove_keys:
        merged.pop(key, None)
    return merged


class _VersionConflict(Exception):
    """Another writer committed between our read and our write."""


def _log_orphaned_failure(tenant_id: str, task_key: str, task: asyncio.Future) -> None:
    if task.cancelled() or task.exception() is None:
        return
    logger.error(
        "Merge on %s/%s failed after its caller stopped waiting",
        tenant_id, task_key, exc_info=task.exception(),
    )


class TaskDocumentStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        graph: TaskDependencyGraph = default_graph,
        max_attempts: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._graph = graph
        self._max_attempts = max_attempts or settings.merge_max_attempts
        self._clock = clock
        self._locks = KeyedLock()

    @property
    def graph(self) -> TaskDependencyGraph:
        return self._graph

    # ── Reads ────────────────────────────────────────────────

    async def get_tasks(self, tenant_id: str) -> list[TaskDocument]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(OnboardingTask)
                    .where(OnboardingTask.tenant_id == tenant_id)
                    .order_by(OnboardingTask.created_at)
                )
                return [TaskDocument.from_row(row) for row in result.scalars().all()]
        except DBAPIError as e:
            logger.error("Task read failed for tenant %s: %s", tenant_id, e)
            raise StoreUnavailableError() from e

    async def get_task(self, tenant_id: str, task_key: str) -> TaskDocument | None:
        try:
            async with self._session_factory() as session:
                row = await self._load(session, tenant_id, task_key, for_update=False)
                return TaskDocument.from_row(row) if row else None
        except DBAPIError as e:
            logger.error("Task read failed for %s/%s: %s", tenant_id, task_key, e)
            raise StoreUnavailableError() from e

    # ── Provisioning ─────────────────────────────────────────

    async def create_tasks(self, session: AsyncSession, tenant_id: str) -> list[OnboardingTask]:
        """Add one empty, incomplete row per graph key to `session`.

        Runs inside the caller's transaction so a tenant is never visible
        without its tasks.  Keys that already have a row are skipped.
        """
        result = await session.execute(
            select(OnboardingTask.task_key).where(OnboardingTask.tenant_id == tenant_id)
        )
        existing = set(result.scalars().all())
        rows = []
        for definition in self._graph.definitions:
            if definition.key in existing:
                continue
            row = OnboardingTask(
                tenant_id=tenant_id,
                task_key=definition.key,
                task_name=definition.name,
                is_completed=False,
                data={},
                version=0,
            )
            session.add(row)
            rows.append(row)
        await session.flush()
        return rows

    # ── Atomic merge ─────────────────────────────────────────

    async def merge_task_data(
        self,
        tenant_id: str,
        task_key: str,
        merge_map: Mapping[str, Any] | None = None,
        remove_keys: Iterable[str] = (),
        mark_completed: bool = False,
    ) -> TaskDocument:
        """Atomically merge into one task document.  See module docstring."""
        merge_map = dict(merge_map or {})
        remove_keys = list(remove_keys)

        # Once submitted, a merge runs to completion even if the caller
        # stops waiting for it.
        task = asyncio.ensure_future(
            self._locked_merge(tenant_id, task_key, merge_map, remove_keys, mark_completed)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(functools.partial(_log_orphaned_failure, tenant_id, task_key))
            raise

    async def _locked_merge(
        self,
        tenant_id: str,
        task_key: str,
        merge_map: dict[str, Any],
        remove_keys: list[str],
        mark_completed: bool,
    ) -> TaskDocument:
        async with self._locks.hold((tenant_id, task_key)):
            for attempt in range(1, self._max_attempts + 1):
                try:
                    return await self._merge_once(
                        tenant_id, task_key, merge_map, remove_keys, mark_completed
                    )
                except (_VersionConflict, IntegrityError):
                    logger.debug(
                        "Merge on %s/%s lost a race (attempt %d/%d), retrying",
                        tenant_id, task_key, attempt, self._max_attempts,
                    )
                except DBAPIError as e:
                    logger.error("Merge on %s/%s failed: %s", tenant_id, task_key, e)
                    raise StoreUnavailableError() from e

        logger.warning(
            "Merge on %s/%s gave up after %d attempts",
            tenant_id, task_key, self._max_attempts,
        )
        raise WriteConflictError(tenant_id, task_key, self._max_attempts)

    async def _merge_once(
        self,
        tenant_id: str,
        task_key: str,
        merge_map: dict[str, Any],
        remove_keys: list[str],
        mark_completed: bool,
    ) -> TaskDocument:
        async with self._session_factory() as session:
            async with session.begin():
                row = await self._load(session, tenant_id, task_key, for_update=True)
                now = self._clock()

                if row is None:
                    data = apply_merge({}, merge_map, remove_keys)
                    row = OnboardingTask(
                        tenant_id=tenant_id,
                        task_key=task_key,
                        task_name=self._task_name(task_key),
                        is_completed=mark_completed,
                        completed_at=now if mark_completed else None,
                        data=data,
                        version=1,
                    )
                    session.add(row)
                    await session.flush()
                    return TaskDocument.from_row(row)

                data = apply_merge(row.data, merge_map, remove_keys)
                is_completed = bool(row.is_completed) or mark_completed
                completed_at = row.completed_at
                if is_completed and completed_at is None:
                    completed_at = now

                result = await session.execute(
                    update(OnboardingTask)
                    .where(
                        OnboardingTask.id == row.id,
                        OnboardingTask.version == row.version,
                    )
                    .values(
                        data=data,
                        is_completed=is_completed,
                        completed_at=completed_at,
                        version=row.version + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise _VersionConflict()

                return TaskDocument(
                    tenant_id=tenant_id,
                    task_key=task_key,
                    task_name=row.task_name,
                    is_completed=is_completed,
                    completed_at=completed_at,
                    data=data,
                    version=row.version + 1,
                )

    async def _load(
        self,
        session: AsyncSession,
        tenant_id: str,
        task_key: str,
        for_update: bool,
    ) -> OnboardingTask | None:
        stmt = select(OnboardingTask).where(
            OnboardingTask.tenant_id == tenant_id,
            OnboardingTask.task_key == task_key,
        )
        if for_update:
            # Rendered as FOR UPDATE on PostgreSQL; a no-op on SQLite
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _task_name(self, task_key: str) -> str:
        return self._graph.name(task_key) if task_key in self._graph else task_key
