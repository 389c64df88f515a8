"""Phase controller — automatic onboarding → reviewing transition.

Rule: when a tenant is in `onboarding` and every task is completed, move
it to `reviewing` and restamp `phase_started_at`.  Later transitions
(pilot_live, contracted) are made by people, not here.

Completion is observed repeatedly (every save, every refresh), so each
tenant has a single-flight guard: while one transition attempt is
outstanding, further observations return IN_FLIGHT without touching the
store.  The guard is released when the attempt settles, so a failed
attempt is retried by the next observation.

The write is also conditional on `phase = 'onboarding'`, which keeps two
workers that both got past their own guards from transitioning twice.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Awaitable, Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_portal.config import settings
from partner_portal.models.onboarding_task import OnboardingTask
from partner_portal.models.tenant import Tenant, TenantPhase, utcnow
from partner_portal.onboarding.engine import build_task_views
from partner_portal.onboarding.graph import TaskDependencyGraph, default_graph
from partner_portal.onboarding.store import TaskDocument
from partner_portal.utils.activity import record_activity
from partner_portal.utils.locks import SingleFlight

logger = logging.getLogger("partner_portal.phase")


class TransitionResult(str, enum.Enum):
    TRANSITIONED = "transitioned"
    NOT_READY = "not_ready"            # some task still incomplete
    NOT_APPLICABLE = "not_applicable"  # tenant is past onboarding already
    IN_FLIGHT = "in_flight"            # another attempt for this tenant is running
    FAILED = "failed"                  # soft failure; retried on next observation


# ── Guards ───────────────────────────────────────────────────


class TransitionGuard(Protocol):
    async def acquire(self, tenant_id: str) -> bool: ...

    async def release(self, tenant_id: str) -> None: ...


class InProcessTransitionGuard:
    """Per-tenant in-flight flags for a single worker process."""

    def __init__(self) -> None:
        self._flights = SingleFlight()

    async def acquire(self, tenant_id: str) -> bool:
        return self._flights.acquire(tenant_id)

    async def release(self, tenant_id: str) -> None:
        self._flights.release(tenant_id)

    def is_in_flight(self, tenant_id: str) -> bool:
        return self._flights.is_in_flight(tenant_id)


class RedisTransitionGuard:
    """Per-tenant in-flight flags shared by every worker through Redis.

    Each flag is a non-blocking redis lock with a TTL, so a worker that
    dies mid-transition cannot wedge the tenant forever.
    """

    def __init__(
        self,
        client: Redis,
        ttl_seconds: int | None = None,
        prefix: str = "portal:phase-guard",
    ):
        self._client = client
        self._ttl = ttl_seconds or settings.transition_guard_ttl_seconds
        self._prefix = prefix
        self._held = {}

    def _key(self, tenant_id: str) -> str:
        return f"{self._prefix}:{tenant_id}"

    async def acquire(self, tenant_id: str) -> bool:
        lock = self._client.lock(self._key(tenant_id), timeout=self._ttl, blocking=False)
        try:
            acquired = await lock.acquire(blocking=False)
        except RedisError:
            logger.warning("Phase guard unavailable for tenant %s", tenant_id, exc_info=True)
            return False
        if acquired:
            self._held[tenant_id] = lock
        return bool(acquired)

    async def release(self, tenant_id: str) -> None:
        lock = self._held.pop(tenant_id, None)
        if lock is None:
            return
        try:
            await lock.release()
        except (LockError, RedisError):
            # Expired or unreachable; the TTL clears it either way
            logger.warning("Phase guard release failed for tenant %s", tenant_id)


# ── Controller ───────────────────────────────────────────────


TransitionListener = Callable[[str, TenantPhase, TenantPhase], Awaitable[None]]


def all_tasks_completed(
    tasks: list[TaskDocument],
    graph: TaskDependencyGraph = default_graph,
) -> bool:
    return all(view.is_completed for view in build_task_views(tasks, graph))


class PhaseController:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        guard: TransitionGuard | None = None,
        graph: TaskDependencyGraph = default_graph,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._guard = guard or InProcessTransitionGuard()
        self._graph = graph
        self._clock = clock
        self._listeners: list[TransitionListener] = []

    @property
    def guard(self) -> TransitionGuard:
        return self._guard

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    async def observe(self, tenant_id: str) -> TransitionResult:
        """Evaluate the all-complete rule for one tenant; never raises for store errors."""
        if not await self._guard.acquire(tenant_id):
            logger.debug("Transition already in flight for tenant %s", tenant_id)
            return TransitionResult.IN_FLIGHT

        try:
            result = await self._evaluate(tenant_id)
        except DBAPIError as e:
            logger.warning(
                "Phase transition for tenant %s failed, will retry on next observation: %s",
                tenant_id, e,
            )
            return TransitionResult.FAILED
        finally:
            await self._guard.release(tenant_id)

        if result is TransitionResult.TRANSITIONED:
            await self._after_transition(tenant_id)
        return result

    async def _evaluate(self, tenant_id: str) -> TransitionResult:
        async with self._session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    logger.warning("Phase check for unknown tenant %s", tenant_id)
                    return TransitionResult.NOT_APPLICABLE
                if tenant.phase != TenantPhase.ONBOARDING:
                    return TransitionResult.NOT_APPLICABLE

                rows = await session.execute(
                    select(OnboardingTask).where(OnboardingTask.tenant_id == tenant_id)
                )
                tasks = [TaskDocument.from_row(r) for r in rows.scalars().all()]
                if not all_tasks_completed(tasks, self._graph):
                    return TransitionResult.NOT_READY

                result = await session.execute(
                    update(Tenant)
                    .where(
                        Tenant.id == tenant_id,
                        Tenant.phase == TenantPhase.ONBOARDING,
                    )
                    .values(
                        phase=TenantPhase.REVIEWING,
                        phase_started_at=self._clock(),
                        onboarding_progress=100,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return TransitionResult.NOT_APPLICABLE

        logger.info("Tenant %s moved from onboarding to reviewing", tenant_id)
        return TransitionResult.TRANSITIONED

    async def _after_transition(self, tenant_id: str) -> None:
        await record_activity(
            self._session_factory,
            tenant_id=tenant_id,
            action="phase_changed",
            entity_type="tenant",
            entity_code=tenant_id,
            summary="All onboarding tasks complete, moved to reviewing",
            details={"from": TenantPhase.ONBOARDING.value, "to": TenantPhase.REVIEWING.value},
        )
        for listener in self._listeners:
            try:
                await listener(tenant_id, TenantPhase.ONBOARDING, TenantPhase.REVIEWING)
            except Exception:
                logger.exception("Phase transition listener failed for tenant %s", tenant_id)


def build_transition_guard(redis_client: Redis | None = None) -> TransitionGuard:
    """Guard implementation selected by `settings.transition_guard`."""
    if settings.transition_guard == "redis":
        if redis_client is None:
            raise ValueError("transition_guard=redis needs a Redis client")
        return RedisTransitionGuard(redis_client)
    return InProcessTransitionGuard()
