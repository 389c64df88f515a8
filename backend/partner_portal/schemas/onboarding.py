"""Pydantic schemas for tenants, onboarding tasks and the step sequencer.

Task `data` is deliberately untyped (`dict[str, Any]`): each task's editor
owns its own keys, and field names are checked against the task's
allow-list by the service, not here.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from partner_portal.models.tenant import TenantPhase
from partner_portal.onboarding.engine import ProgressView, TaskView
from partner_portal.onboarding.sequencer import SequencerSnapshot, StepState


# ── Tenants ─────────────────────────────────────────────────

class TenantCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)

    @field_validator("name")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Tenant name cannot be blank")
        return v


class TenantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    phase: TenantPhase
    phase_started_at: datetime
    onboarding_progress: int
    created_at: datetime | None = None


# ── Task view ───────────────────────────────────────────────

class TaskOut(BaseModel):
    key: str
    name: str
    is_completed: bool
    is_locked: bool
    completed_at: datetime | None = None
    data: dict[str, Any] = {}

    @classmethod
    def from_view(cls, view: TaskView) -> "TaskOut":
        return cls(
            key=view.key,
            name=view.name,
            is_completed=view.is_completed,
            is_locked=view.is_locked,
            completed_at=view.completed_at,
            data=view.data,
        )


class TaskListOut(BaseModel):
    tenant_id: str
    tasks: list[TaskOut]
    progress: int
    status: str
    current_key: str | None = None
    all_completed: bool

    @classmethod
    def from_view(cls, tenant_id: str, view: ProgressView) -> "TaskListOut":
        return cls(
            tenant_id=tenant_id,
            tasks=[TaskOut.from_view(t) for t in view.tasks],
            progress=view.progress,
            status=view.status,
            current_key=view.current_key,
            all_completed=view.all_completed,
        )


# ── Task writes ─────────────────────────────────────────────

class TaskFieldsUpdate(BaseModel):
    """Merge some fields and remove others in one atomic write."""
    merge: dict[str, Any] = {}
    remove: list[str] = []


class UploadOut(BaseModel):
    field_name: str
    path: str
    size: int
    content_type: str | None = None
    task_list: TaskListOut


# ── Step sequencer ──────────────────────────────────────────

class SequencerOut(BaseModel):
    state: StepState
    expanded_key: str | None = None
    just_completed_key: str | None = None
    unlocking_key: str | None = None

    @classmethod
    def from_snapshot(cls, snap: SequencerSnapshot) -> "SequencerOut":
        return cls(
            state=snap.state,
            expanded_key=snap.expanded_key,
            just_completed_key=snap.just_completed_key,
            unlocking_key=snap.unlocking_key,
        )
