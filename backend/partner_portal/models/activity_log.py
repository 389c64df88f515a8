"""ActivityLog — append-only trail of onboarding actions.

Records what happened to which tenant task and when.  Written on a
best-effort basis; there is no feed or dashboard reading it here.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from partner_portal.database import Base
from partner_portal.models.tenant import utcnow


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Who ────────────────────────────────────────────────────
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # ── What ───────────────────────────────────────────────────
    # task_updated | task_completed | file_uploaded | fields_removed |
    # phase_changed
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # ── Target ─────────────────────────────────────────────────
    # task | tenant
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_code: Mapped[str | None] = mapped_column(String(100))

    # ── Context ────────────────────────────────────────────────
    summary: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column(JSON)

    # ── Timestamp ──────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
