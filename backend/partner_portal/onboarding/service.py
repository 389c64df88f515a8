"""Onboarding service — the API the presentation layer talks to.

Every write follows the same path:

  1. validate (task key, field names, values, file), no store access yet
  2. confirm the tenant exists and the task is not locked
  3. one atomic `merge_task_data` call
  4. best-effort follow-ups: progress snapshot on the tenant, activity log
  5. return a freshly computed task view, which also lets the phase
     controller observe the all-complete condition

Errors from steps 1-3 propagate to the caller.  Step 4 failures are
logged and swallowed.  Phase transition failures are soft (see phase.py).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_portal.middleware.exceptions import (
    ResourceNotFoundError,
    StoreUnavailableError,
    TaskLockedError,
)
from partner_portal.models.tenant import Tenant, TenantPhase
from partner_portal.onboarding.blobs import BlobRef, BlobStore, LocalBlobStore, blob_path
from partner_portal.onboarding.debounce import DebouncedTaskWriter
from partner_portal.onboarding.engine import ProgressView, build_progress_view
from partner_portal.onboarding.graph import TaskDependencyGraph, default_graph
from partner_portal.onboarding.phase import PhaseController, TransitionResult
from partner_portal.onboarding.sequencer import (
    SequencerSnapshot,
    SequencerTimings,
    StepSequencer,
    StepState,
)
from partner_portal.onboarding.store import TaskDocument, TaskDocumentStore
from partner_portal.onboarding.validation import (
    rules_for,
    validate_merge,
    validate_task_key,
    validate_upload,
)
from partner_portal.utils.activity import record_activity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadResult:
    blob: BlobRef
    field_name: str
    view: ProgressView


class OnboardingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: TaskDocumentStore | None = None,
        blob_store: BlobStore | None = None,
        phase_controller: PhaseController | None = None,
        graph: TaskDependencyGraph = default_graph,
        sequencer_timings: SequencerTimings | None = None,
    ):
        self._session_factory = session_factory
        self._graph = graph
        self._store = store or TaskDocumentStore(session_factory, graph=graph)
        self._blobs = blob_store or LocalBlobStore()
        self._phases = phase_controller or PhaseController(session_factory, graph=graph)
        self._sequencer_timings = sequencer_timings
        self._sequencers: dict[str, StepSequencer] = {}

    @property
    def store(self) -> TaskDocumentStore:
        return self._store

    @property
    def phase_controller(self) -> PhaseController:
        return self._phases

    # ── Tenants ──────────────────────────────────────────────

    async def provision_tenant(self, name: str) -> Tenant:
        """Create a tenant in `onboarding` with one empty task per graph key."""
        async with self._session_factory() as session:
            async with session.begin():
                tenant = Tenant(name=name, phase=TenantPhase.ONBOARDING, onboarding_progress=0)
                session.add(tenant)
                await session.flush()
                await self._store.create_tasks(session, tenant.id)
        logger.info("Provisioned tenant %s (%s)", tenant.id, name)
        return tenant

    async def get_tenant(self, tenant_id: str) -> Tenant:
        try:
            async with self._session_factory() as session:
                tenant = await session.get(Tenant, tenant_id)
        except DBAPIError as e:
            raise StoreUnavailableError() from e
        if tenant is None:
            raise ResourceNotFoundError("Tenant", tenant_id)
        return tenant

    # ── Reads ────────────────────────────────────────────────

    async def get_tasks(self, tenant_id: str) -> ProgressView:
        """Ordered task view with lock flags, progress and status."""
        tenant = await self.get_tenant(tenant_id)
        tasks = await self._store.get_tasks(tenant_id)
        view = build_progress_view(tasks, tenant.phase, self._graph)

        if view.all_completed and tenant.phase == TenantPhase.ONBOARDING:
            result = await self._phases.observe(tenant_id)
            if result is TransitionResult.TRANSITIONED:
                view = build_progress_view(tasks, TenantPhase.REVIEWING, self._graph)
        return view

    # ── Writes ───────────────────────────────────────────────

    async def update_task(
        self,
        tenant_id: str,
        task_key: str,
        data: Mapping[str, Any] | None,
        mark_completed: bool = False,
    ) -> ProgressView:
        return await self._write_task(tenant_id, task_key, data, (), mark_completed)

    async def remove_task_fields(
        self,
        tenant_id: str,
        task_key: str,
        merge_map: Mapping[str, Any] | None,
        remove_keys: Iterable[str],
    ) -> ProgressView:
        return await self._write_task(tenant_id, task_key, merge_map, remove_keys, False)

    async def upload_and_attach(
        self,
        tenant_id: str,
        task_key: str,
        field_name: str,
        filename: str,
        content: bytes,
        content_type: str | None,
    ) -> UploadResult:
        """Upload a file, then record its reference in the task document.

        The reference is merged only after the upload succeeded, so a
        failed upload never leaves a dangling pointer behind.
        """
        validate_upload(task_key, field_name, filename, content_type, len(content), self._graph)
        await self._ensure_unlocked(tenant_id, task_key)

        ref = await self._blobs.upload(
            blob_path(tenant_id, task_key, field_name, filename), content, content_type
        )

        mark_completed = rules_for(task_key).auto_complete_on_upload
        doc = await self._store.merge_task_data(
            tenant_id, task_key, {field_name: ref.as_field_value()}, [], mark_completed
        )
        await self._after_write(
            doc, "file_uploaded", {"field": field_name, "path": ref.path, "size": ref.size}
        )
        return UploadResult(blob=ref, field_name=field_name, view=await self.get_tasks(tenant_id))

    def debounced_writer(
        self,
        tenant_id: str,
        task_key: str,
        delay: float | None = None,
    ) -> DebouncedTaskWriter:
        """Autosave helper that collapses rapid edits into one update."""
        validate_task_key(task_key, self._graph)

        async def _write(merge_map: dict, remove_keys: list, mark_completed: bool) -> ProgressView:
            return await self._write_task(tenant_id, task_key, merge_map, remove_keys, mark_completed)

        return DebouncedTaskWriter(_write, delay)

    async def _write_task(
        self,
        tenant_id: str,
        task_key: str,
        merge_map: Mapping[str, Any] | None,
        remove_keys: Iterable[str],
        mark_completed: bool,
    ) -> ProgressView:
        merge_map, remove_keys = validate_merge(task_key, merge_map, remove_keys, self._graph)
        await self._ensure_unlocked(tenant_id, task_key)

        doc = await self._store.merge_task_data(
            tenant_id, task_key, merge_map, remove_keys, mark_completed
        )

        if mark_completed:
            action = "task_completed"
        elif remove_keys:
            action = "fields_removed"
        else:
            action = "task_updated"
        details = {"fields": sorted(merge_map)}
        if remove_keys:
            details["removed"] = sorted(remove_keys)
        await self._after_write(doc, action, details)
        return await self.get_tasks(tenant_id)

    # ── Step sequencing ──────────────────────────────────────

    async def on_step_complete(self, tenant_id: str, task_key: str) -> SequencerSnapshot:
        validate_task_key(task_key, self._graph)
        await self.get_tenant(tenant_id)
        sequencer = self._sequencer(tenant_id)
        sequencer.step_complete(task_key)
        return sequencer.snapshot()

    async def sequencer_snapshot(self, tenant_id: str) -> SequencerSnapshot:
        await self.get_tenant(tenant_id)
        sequencer = self._sequencers.get(tenant_id)
        if sequencer is None:
            # Nothing has been completed in this process yet
            return SequencerSnapshot(StepState.IDLE, None, None, None)
        return sequencer.snapshot()

    def _sequencer(self, tenant_id: str) -> StepSequencer:
        sequencer = self._sequencers.get(tenant_id)
        if sequencer is None:
            async def _is_locked(key: str) -> bool:
                tasks = await self._store.get_tasks(tenant_id)
                return self._graph.is_locked(key, tasks)

            sequencer = StepSequencer(_is_locked, self._graph, self._sequencer_timings)
            self._sequencers[tenant_id] = sequencer
        return sequencer

    # ── Internals ────────────────────────────────────────────

    async def _ensure_unlocked(self, tenant_id: str, task_key: str) -> list[TaskDocument]:
        # Completion is one-way, so a task seen unlocked here stays unlocked
        await self.get_tenant(tenant_id)
        tasks = await self._store.get_tasks(tenant_id)
        lock = self._graph.lock_info(task_key, tasks)
        if lock is not None:
            raise TaskLockedError(task_key, lock.blocked_by, lock.unlock_hint)
        return tasks

    async def _after_write(self, doc: TaskDocument, action: str, details: dict) -> None:
        await self._refresh_progress(doc.tenant_id)
        await record_activity(
            self._session_factory,
            tenant_id=doc.tenant_id,
            action=action,
            entity_type="task",
            entity_code=doc.task_key,
            summary=f"{doc.task_name}: {action.replace('_', ' ')}",
            details=details,
        )

    async def _refresh_progress(self, tenant_id: str) -> None:
        """Store the current progress on the tenant row for list views."""
        try:
            tasks = await self._store.get_tasks(tenant_id)
            progress = build_progress_view(tasks, TenantPhase.ONBOARDING, self._graph).progress
            await self._store_progress(tenant_id, progress)
        except (SQLAlchemyError, StoreUnavailableError):
            logger.warning("Could not refresh progress for tenant %s", tenant_id, exc_info=True)

    async def _store_progress(self, tenant_id: str, progress: int) -> bool:
        """Raise the cached progress to `progress`; a lower value is ignored."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Tenant)
                    .where(
                        Tenant.id == tenant_id,
                        func.coalesce(Tenant.onboarding_progress, 0) < progress,
                    )
                    .values(onboarding_progress=progress)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def list_tenants(self, phase: TenantPhase | None = None) -> list[Tenant]:
        async with self._session_factory() as session:
            stmt = select(Tenant).order_by(Tenant.created_at)
            if phase is not None:
                stmt = stmt.where(Tenant.phase == phase)
            result = await session.execute(stmt)
            return list(result.scalars().all())
