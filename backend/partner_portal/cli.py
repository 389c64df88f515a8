"""Management CLI for tenant operations.

Usage:
    python -m partner_portal.cli create-tables           # Create all tables (dev only; use Alembic in prod)
    python -m partner_portal.cli provision-tenant NAME   # New tenant with its empty task set
    python -m partner_portal.cli list-tenants            # Show tenants with phase and progress
"""

import asyncio
import sys

from partner_portal.database import Base, async_session, engine
from partner_portal.models import ActivityLog, OnboardingTask, Tenant  # noqa: F401
from partner_portal.onboarding.service import OnboardingService


async def create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Tables created.")


async def provision_tenant(name: str):
    service = OnboardingService(async_session)
    tenant = await service.provision_tenant(name)
    print(f"  {tenant.id}  {tenant.name}")


async def list_tenants():
    service = OnboardingService(async_session)
    tenants = await service.list_tenants()
    for t in tenants:
        print(f"  {t.id}  {t.phase.value:<12} {t.onboarding_progress:>3}%  {t.name}")
    print(f"\n{len(tenants)} tenant(s)")


async def _run(cmd: str, args: list[str]) -> int:
    try:
        if cmd == "create-tables":
            await create_tables()
        elif cmd == "provision-tenant" and args:
            await provision_tenant(" ".join(args))
        elif cmd == "list-tenants":
            await list_tenants()
        else:
            print(__doc__)
            return 1
        return 0
    finally:
        await engine.dispose()


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    sys.exit(asyncio.run(_run(cmd, sys.argv[2:])))
