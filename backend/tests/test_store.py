"""Task document store tests: atomic merges, completion stamping, conflicts."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from partner_portal.middleware.exceptions import StoreUnavailableError, WriteConflictError
from partner_portal.models.onboarding_task import OnboardingTask
from partner_portal.onboarding.store import TaskDocumentStore, apply_merge


class _TickingClock:
    """Each call is one minute after the previous one."""

    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


class _RacingStore(TaskDocumentStore):
    """Lets another writer commit between our read and our write."""

    def __init__(self, *args, races: int = 1, **kwargs):
        super().__init__(*args, **kwargs)
        self.races = races

    async def _load(self, session, tenant_id, task_key, for_update):
        row = await super()._load(session, tenant_id, task_key, for_update)
        if for_update and row is not None and self.races > 0:
            self.races -= 1
            async with self._session_factory() as other:
                await other.execute(
                    update(OnboardingTask)
                    .where(OnboardingTask.id == row.id)
                    .values(
                        version=OnboardingTask.version + 1,
                        data={**row.data, f"external_{self.races}": True},
                    )
                )
                await other.commit()
        return row


class _BrokenStore(TaskDocumentStore):
    async def _load(self, session, tenant_id, task_key, for_update):
        raise OperationalError("SELECT onboarding_tasks", {}, Exception("connection refused"))


class _StalledStore(TaskDocumentStore):
    """Holds every merge until `release` is set, then fails it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def _merge_once(self, *args):
        self.started.set()
        await self.release.wait()
        raise StoreUnavailableError()


@pytest.mark.unit
class TestApplyMerge:

    def test_merge_then_remove(self):
        assert apply_merge({"a": 1, "b": 2}, {"b": 3, "c": 4}, ["a"]) == {"b": 3, "c": 4}

    def test_removal_beats_merge_in_one_call(self):
        assert apply_merge({}, {"x": 1}, ["x"]) == {}

    def test_input_not_mutated(self):
        doc = {"a": 1}
        apply_merge(doc, {"b": 2}, [])
        assert doc == {"a": 1}


@pytest.mark.asyncio
class TestTaskDocumentStore:

    @pytest.fixture
    def store(self, service):
        return service.store

    async def test_provisioned_tasks_are_empty(self, store, tenant):
        tasks = await store.get_tasks(tenant.id)
        assert [t.task_key for t in tasks] == ["brand", "venue", "pos", "devices", "legal"]
        assert all(not t.is_completed and t.data == {} and t.version == 0 for t in tasks)

    async def test_merge_preserves_other_fields(self, store, tenant):
        await store.merge_task_data(tenant.id, "brand", {"notes": "navy"})
        doc = await store.merge_task_data(tenant.id, "brand", {"logo_url": "a.png"})
        assert doc.data == {"notes": "navy", "logo_url": "a.png"}
        assert doc.version == 2

    async def test_merge_is_idempotent(self, store, tenant):
        first = await store.merge_task_data(tenant.id, "brand", {"notes": "x"})
        second = await store.merge_task_data(tenant.id, "brand", {"notes": "x"})
        assert first.data == second.data == {"notes": "x"}

        stored = await store.get_task(tenant.id, "brand")
        assert stored.data == {"notes": "x"}

    async def test_concurrent_merges_union(self, store, tenant):
        await asyncio.gather(*(
            store.merge_task_data(tenant.id, "pos", {f"field_{i}": i}) for i in range(10)
        ))
        doc = await store.get_task(tenant.id, "pos")
        assert doc.data == {f"field_{i}": i for i in range(10)}
        assert doc.version == 10

    async def test_concurrent_merges_on_different_tasks(self, store, tenant):
        await asyncio.gather(
            store.merge_task_data(tenant.id, "pos", {"provider": "toast"}),
            store.merge_task_data(tenant.id, "devices", {"tablet_count": 4}),
        )
        assert (await store.get_task(tenant.id, "pos")).data == {"provider": "toast"}
        assert (await store.get_task(tenant.id, "devices")).data == {"tablet_count": 4}

    async def test_remove_wins_within_one_call(self, store, tenant):
        await store.merge_task_data(tenant.id, "brand", {"logo_url": "a.png", "notes": "n"})
        doc = await store.merge_task_data(
            tenant.id, "brand", {"logo_url": "b.png"}, remove_keys=["logo_url"]
        )
        assert doc.data == {"notes": "n"}

    async def test_removing_absent_key_is_harmless(self, store, tenant):
        doc = await store.merge_task_data(tenant.id, "brand", remove_keys=["nope"])
        assert doc.data == {}

    async def test_completion_is_stamped_once(self, session_factory, tenant):
        store = TaskDocumentStore(session_factory, clock=_TickingClock())

        done = await store.merge_task_data(tenant.id, "brand", {"notes": "x"}, mark_completed=True)
        assert done.is_completed
        first_stamp = (await store.get_task(tenant.id, "brand")).completed_at
        assert first_stamp is not None

        await store.merge_task_data(tenant.id, "brand", {"notes": "y"})
        await store.merge_task_data(tenant.id, "brand", mark_completed=True)

        stored = await store.get_task(tenant.id, "brand")
        assert stored.is_completed
        assert stored.completed_at == first_stamp
        assert stored.data == {"notes": "y"}

    async def test_merge_without_completion_keeps_task_open(self, store, tenant):
        doc = await store.merge_task_data(tenant.id, "brand", {"notes": "x"})
        assert doc.is_completed is False
        assert doc.completed_at is None

    async def test_missing_row_is_created(self, session_factory):
        store = TaskDocumentStore(session_factory)

        # A tenant whose task rows were never provisioned
        doc = await store.merge_task_data("orphan-tenant", "venue", {"venues": []})
        assert doc.version == 1
        assert doc.task_name == "Venue Manager"
        assert (await store.get_task("orphan-tenant", "venue")).data == {"venues": []}

    async def test_get_task_unknown(self, store, tenant):
        assert await store.get_task(tenant.id, "nothing") is None

    async def test_lost_race_is_retried(self, session_factory, tenant):
        store = _RacingStore(session_factory, races=1)
        doc = await store.merge_task_data(tenant.id, "brand", {"notes": "mine"})

        # Both the concurrent writer's field and ours survive
        assert doc.data == {"external_0": True, "notes": "mine"}
        assert doc.version == 2

    async def test_conflict_after_max_attempts_writes_nothing(self, session_factory, tenant):
        store = _RacingStore(session_factory, races=3, max_attempts=3)

        with pytest.raises(WriteConflictError) as exc_info:
            await store.merge_task_data(tenant.id, "brand", {"notes": "mine"})
        assert exc_info.value.status_code == 409

        stored = await store.get_task(tenant.id, "brand")
        assert "notes" not in stored.data
        assert stored.version == 3

    async def test_store_outage_maps_to_unavailable(self, session_factory, tenant):
        store = _BrokenStore(session_factory)
        with pytest.raises(StoreUnavailableError):
            await store.merge_task_data(tenant.id, "brand", {"notes": "x"})

    async def test_create_tasks_is_idempotent(self, store, session_factory, tenant):
        async with session_factory() as session:
            async with session.begin():
                created = await store.create_tasks(session, tenant.id)
        assert created == []
        assert len(await store.get_tasks(tenant.id)) == 5

    async def test_abandoned_merge_failure_is_logged(self, session_factory, tenant, caplog):
        store = _StalledStore(session_factory)
        caller = asyncio.ensure_future(store.merge_task_data(tenant.id, "brand", {"notes": "x"}))
        await store.started.wait()

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        with caplog.at_level(logging.ERROR, logger="partner_portal.onboarding.store"):
            store.release.set()
            for _ in range(5):
                await asyncio.sleep(0)

        assert f"Merge on {tenant.id}/brand failed after its caller stopped waiting" in caplog.text

    async def test_awaited_merge_failure_is_not_logged_twice(self, session_factory, tenant, caplog):
        store = _StalledStore(session_factory)
        store.release.set()
        with caplog.at_level(logging.ERROR, logger="partner_portal.onboarding.store"):
            with pytest.raises(StoreUnavailableError):
                await store.merge_task_data(tenant.id, "brand", {"notes": "x"})
        assert "caller stopped waiting" not in caplog.text
