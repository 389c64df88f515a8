"""Aggregate model imports for Alembic auto-detection."""

from partner_portal.models.tenant import Tenant, TenantPhase  # noqa: F401
from partner_portal.models.onboarding_task import OnboardingTask  # noqa: F401
from partner_portal.models.activity_log import ActivityLog  # noqa: F401
