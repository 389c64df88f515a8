"""Initial onboarding tables — tenants, onboarding_tasks, activity_logs.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-17

Run with:
    alembic upgrade head
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa

lifecycle_phase = sa.Enum(
    "onboarding", "reviewing", "pilot_live", "contracted",
    name="lifecycle_phase",
)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phase", lifecycle_phase, nullable=False, server_default="onboarding"),
        sa.Column("phase_started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("onboarding_progress", sa.Integer(), server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_tenants_phase", "tenants", ["phase"])

    op.create_table(
        "onboarding_tasks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tenant_id", sa.String(36),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("task_key", sa.String(50), nullable=False),
        sa.Column("task_name", sa.String(255), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "task_key", name="uq_onboarding_tasks_tenant_key"),
        # Completed tasks always carry their completion time
        sa.CheckConstraint(
            "NOT is_completed OR completed_at IS NOT NULL",
            name="ck_onboarding_tasks_completed_at",
        ),
    )
    op.create_index("ix_onboarding_tasks_tenant_id", "onboarding_tasks", ["tenant_id"])

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_code", sa.String(100)),
        sa.Column("summary", sa.Text()),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_tenant_id", "activity_logs", ["tenant_id"])
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("onboarding_tasks")
    op.drop_table("tenants")
    lifecycle_phase.drop(op.get_bind(), checkfirst=True)
