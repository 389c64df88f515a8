"""Lightweight helpers for recording activity log entries.

Usage inside an existing transaction:
    await log_activity(
        db, tenant_id=tenant.id, action="phase_changed",
        entity_type="tenant", entity_code=tenant.name,
        summary="Onboarding complete, moved to reviewing",
    )

Usage after the primary write has committed (best-effort, own session):
    await record_activity(session_factory, tenant_id=..., action=..., ...)
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_portal.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


async def log_activity(
    db: AsyncSession,
    *,
    tenant_id: str,
    action: str,
    entity_type: str,
    entity_code: str | None = None,
    summary: str | None = None,
    details: dict | None = None,
) -> None:
    """Append an activity log entry to the current DB session."""
    entry = ActivityLog(
        tenant_id=tenant_id,
        action=action,
        entity_type=entity_type,
        entity_code=entity_code,
        summary=summary,
        details=details,
    )
    db.add(entry)


async def record_activity(
    session_factory: async_sessionmaker[AsyncSession],
    **entry,
) -> bool:
    """Write one entry in its own transaction.  Failures are logged, not raised."""
    try:
        async with session_factory() as db:
            await log_activity(db, **entry)
            await db.commit()
        return True
    except SQLAlchemyError:
        logger.warning(
            "Could not record activity %s for tenant %s",
            entry.get("action"), entry.get("tenant_id"),
            exc_info=True,
        )
        return False
