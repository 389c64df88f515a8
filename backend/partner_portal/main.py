import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from partner_portal.config import settings
from partner_portal.database import async_session, engine
from partner_portal.middleware.exceptions import register_exception_handlers
from partner_portal.onboarding.blobs import LocalBlobStore
from partner_portal.onboarding.phase import PhaseController, build_transition_guard
from partner_portal.onboarding.service import OnboardingService
from partner_portal.routers import health, tasks, tenants
from partner_portal.utils.redis_client import close_redis, get_redis

logger = logging.getLogger("partner_portal")


@asynccontextmanager
async def lifespan(app: FastAPI):
    redis_client = await get_redis() if settings.transition_guard == "redis" else None
    app.state.onboarding = OnboardingService(
        async_session,
        blob_store=LocalBlobStore(settings.blob_root),
        phase_controller=PhaseController(
            async_session, guard=build_transition_guard(redis_client)
        ),
    )
    logger.info("Partner portal started (guard=%s)", settings.transition_guard)
    yield
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="Partner Portal",
    description="Partner onboarding task progression service",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(tenants.router, prefix="/api/tenants", tags=["tenants"])
app.include_router(tasks.router, prefix="/api/tenants", tags=["tasks"])
