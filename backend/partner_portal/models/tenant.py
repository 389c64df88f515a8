import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum as SAEnum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from partner_portal.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantPhase(str, enum.Enum):
    ONBOARDING = "onboarding"
    REVIEWING = "reviewing"
    PILOT_LIVE = "pilot_live"
    CONTRACTED = "contracted"


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Mutated only by the phase controller (or an admin override).
    phase: Mapped[TenantPhase] = mapped_column(
        SAEnum(
            TenantPhase,
            name="lifecycle_phase",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=TenantPhase.ONBOARDING,
        nullable=False,
        index=True,
    )
    phase_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    # Last computed progress (0-100); the task list is authoritative.
    onboarding_progress: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    tasks = relationship(
        "OnboardingTask",
        back_populates="tenant",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
