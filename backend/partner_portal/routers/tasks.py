"""Onboarding tasks — ordered checklist with atomic partial saves.

Endpoints:
  GET   /api/tenants/{tenant_id}/tasks                   → ordered task view + progress
  PATCH /api/tenants/{tenant_id}/tasks/{task_key}        → merge fields (?complete=true to finish)
  POST  /api/tenants/{tenant_id}/tasks/{task_key}/fields → merge + remove in one write
  POST  /api/tenants/{tenant_id}/tasks/{task_key}/uploads → upload a file and attach it
  GET   /api/tenants/{tenant_id}/steps                   → step sequencer snapshot
  POST  /api/tenants/{tenant_id}/steps/{task_key}/complete → start the completion sequence

Design:
  - Every write is a single merge against one task document; concurrent
    saves to the same task never overwrite each other's fields.
  - A task is locked until the one before it is complete.
  - Completing the last task moves the tenant to `reviewing`.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, File, Form, UploadFile

from partner_portal.deps import get_onboarding_service
from partner_portal.onboarding.service import OnboardingService
from partner_portal.onboarding.validation import upload_limit_bytes
from partner_portal.schemas.onboarding import (
    SequencerOut,
    TaskFieldsUpdate,
    TaskListOut,
    UploadOut,
)

router = APIRouter()


# ── GET /api/tenants/{tenant_id}/tasks ──────────────────────

@router.get("/{tenant_id}/tasks", response_model=TaskListOut)
async def get_tasks(
    tenant_id: str,
    service: OnboardingService = Depends(get_onboarding_service),
):
    view = await service.get_tasks(tenant_id)
    return TaskListOut.from_view(tenant_id, view)


# ── PATCH /api/tenants/{tenant_id}/tasks/{task_key} ─────────

@router.patch("/{tenant_id}/tasks/{task_key}", response_model=TaskListOut)
async def update_task(
    tenant_id: str,
    task_key: str,
    body: dict[str, Any] = Body(default_factory=dict),
    complete: bool = False,
    service: OnboardingService = Depends(get_onboarding_service),
):
    """Merge fields into the task's data. Pass ?complete=true to mark it done."""
    view = await service.update_task(tenant_id, task_key, body, mark_completed=complete)
    return TaskListOut.from_view(tenant_id, view)


@router.post("/{tenant_id}/tasks/{task_key}/fields", response_model=TaskListOut)
async def update_task_fields(
    tenant_id: str,
    task_key: str,
    body: TaskFieldsUpdate,
    service: OnboardingService = Depends(get_onboarding_service),
):
    """Merge and remove fields atomically; a key in both lists ends up removed."""
    view = await service.remove_task_fields(tenant_id, task_key, body.merge, body.remove)
    return TaskListOut.from_view(tenant_id, view)


# ── POST /api/tenants/{tenant_id}/tasks/{task_key}/uploads ──

@router.post("/{tenant_id}/tasks/{task_key}/uploads", response_model=UploadOut)
async def upload_file(
    tenant_id: str,
    task_key: str,
    field_name: str = Form(...),
    file: UploadFile = File(...),
    service: OnboardingService = Depends(get_onboarding_service),
):
    # One byte past the limit is enough for the size check to reject it
    limit = upload_limit_bytes(task_key, field_name)
    content = await file.read(limit + 1)
    result = await service.upload_and_attach(
        tenant_id,
        task_key,
        field_name=field_name,
        filename=file.filename or "",
        content=content,
        content_type=file.content_type,
    )
    return UploadOut(
        field_name=result.field_name,
        path=result.blob.path,
        size=result.blob.size,
        content_type=result.blob.content_type,
        task_list=TaskListOut.from_view(tenant_id, result.view),
    )


# ── Step sequencer ──────────────────────────────────────────

@router.get("/{tenant_id}/steps", response_model=SequencerOut)
async def get_step_state(
    tenant_id: str,
    service: OnboardingService = Depends(get_onboarding_service),
):
    snapshot = await service.sequencer_snapshot(tenant_id)
    return SequencerOut.from_snapshot(snapshot)


@router.post("/{tenant_id}/steps/{task_key}/complete", response_model=SequencerOut)
async def step_complete(
    tenant_id: str,
    task_key: str,
    service: OnboardingService = Depends(get_onboarding_service),
):
    snapshot = await service.on_step_complete(tenant_id, task_key)
    return SequencerOut.from_snapshot(snapshot)
