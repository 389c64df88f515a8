"""Onboarding service tests for the cached tenant progress."""

import pytest

from partner_portal.models.tenant import Tenant, TenantPhase


async def _tenant_row(session_factory, tenant_id) -> Tenant:
    async with session_factory() as session:
        return await session.get(Tenant, tenant_id)


@pytest.mark.asyncio
class TestCachedProgress:

    async def test_progress_follows_completed_tasks(self, service, session_factory, tenant):
        await service.update_task(tenant.id, "brand", {"notes": "Serif"}, mark_completed=True)
        await service.update_task(tenant.id, "venue", {}, mark_completed=True)

        row = await _tenant_row(session_factory, tenant.id)
        assert row.onboarding_progress == 40

    async def test_stale_refresh_does_not_lower_progress(
        self, service, session_factory, tenant, monkeypatch
    ):
        for key in ("brand", "venue", "pos", "devices"):
            await service.update_task(tenant.id, key, {}, mark_completed=True)
        stale = await service.store.get_tasks(tenant.id)

        await service.update_task(tenant.id, "legal", {}, mark_completed=True)
        view = await service.get_tasks(tenant.id)
        assert view.progress == 100

        # A refresh that read the tasks before legal was completed finishes last
        async def _stale_tasks(tenant_id):
            return stale

        monkeypatch.setattr(service.store, "get_tasks", _stale_tasks)
        await service._refresh_progress(tenant.id)

        row = await _tenant_row(session_factory, tenant.id)
        assert row.onboarding_progress == 100
        assert row.phase == TenantPhase.REVIEWING

    async def test_store_progress_only_raises(self, service, session_factory, tenant):
        assert await service._store_progress(tenant.id, 60) is True
        assert await service._store_progress(tenant.id, 20) is False
        assert await service._store_progress(tenant.id, 60) is False
        assert await service._store_progress(tenant.id, 80) is True

        row = await _tenant_row(session_factory, tenant.id)
        assert row.onboarding_progress == 80

    async def test_unknown_tenant_progress_is_ignored(self, service):
        assert await service._store_progress("missing", 40) is False


@pytest.mark.asyncio
class TestSequencerSnapshot:

    async def test_read_does_not_create_a_sequencer(self, service, tenant):
        snap = await service.sequencer_snapshot(tenant.id)
        assert snap.state.value == "idle"
        assert snap.expanded_key is None
        assert service._sequencers == {}
