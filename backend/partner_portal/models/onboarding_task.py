"""One onboarding task per (tenant, task_key).

`data` is an open JSON document owned by the task's editor; it has no
fixed schema.  Every write goes through the task document store, which
bumps `version` so concurrent writers can detect each other.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from partner_portal.database import Base
from partner_portal.models.tenant import utcnow


class OnboardingTask(Base):
    __tablename__ = "onboarding_tasks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "task_key", name="uq_onboarding_tasks_tenant_key"),
        CheckConstraint(
            "NOT is_completed OR completed_at IS NOT NULL",
            name="ck_onboarding_tasks_completed_at",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    task_key: Mapped[str] = mapped_column(String(50), nullable=False)
    task_name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Always set when is_completed is true; first completion wins.
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    # Compare-and-swap counter for cross-process merges
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    tenant = relationship("Tenant", back_populates="tasks")
