"""
School Portal Invites API - Main Application Entry Point

Builds the FastAPI application: logging, Redis and database connections,
invite service wiring (store, token codec, rate limiter, audit, email), the
expiry job, CORS, the versioned API, and health endpoints. The debug router
is mounted only outside production.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from app.api import api_router
from app.core.config import Settings, settings
from app.core.database import async_session_maker, close_db, init_db
from app.core.email import ResendNotifier
from app.core.exceptions import DependencyError
from app.core.rate_limit import CounterStore, RateLimiter, tiers_from_settings
from app.core.redis import RedisCounterStore
from app.core.scheduler import start_scheduler, stop_scheduler, unregister_all_jobs
from app.debug import router as debug_router
from app.modules.invites import ExpiryReconciler, InviteService, register_invite_jobs
from app.modules.invites.audit import AuditTrail, DatabaseAuditTrail, LoggingAuditTrail
from app.modules.invites.repository import SqlAlchemyInviteStore
from app.modules.invites.tokens import TokenCodec

logger = logging.getLogger(__name__)


def configure_logging(config: Settings) -> None:
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_audit_trail(config: Settings) -> AuditTrail:
    if config.audit_backend == "database":
        return DatabaseAuditTrail(async_session_maker)
    return LoggingAuditTrail()


def build_invite_service(
    config: Settings, counter_store: CounterStore, audit: AuditTrail
) -> InviteService:
    """Wire the invite service from settings and the started infrastructure."""
    return InviteService(
        store=SqlAlchemyInviteStore(async_session_maker),
        codec=TokenCodec.from_secret(config.invite_token_secret),
        rate_limiter=RateLimiter(
            counter_store,
            tiers_from_settings(config),
            fail_open=config.rate_limit_fail_open,
        ),
        audit=audit,
        notifier=ResendNotifier.from_settings(config),
        expiry=timedelta(days=config.invite_expiry_days),
        teacher_email_domains=config.teacher_email_domains_list,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Connect Redis and the database, wire the invite service onto
    ``app.state`` and start the scheduler; tear down in reverse on exit.
    """
    # Startup
    configure_logging(settings)
    logger.info(f"Starting School Portal Invites API in {settings.python_env} mode...")
    settings.check_production_secrets()

    # Initialize Redis
    counter_store = RedisCounterStore(settings.redis_url)
    try:
        await counter_store.connect()
        logger.info("[OK] Redis connected")
    except DependencyError as e:
        logger.error(f"[FAIL] Redis connection failed: {e}")
        # With fail-open rate limiting the service still runs without Redis
        if settings.is_production and not settings.rate_limit_fail_open:
            raise

    # Initialize Database
    try:
        await init_db()
        logger.info("[OK] Database connected")
    except Exception as e:
        logger.error(f"[FAIL] Database connection failed: {e}")
        if settings.is_production:
            raise

    audit = build_audit_trail(settings)
    app.state.counter_store = counter_store
    app.state.invite_service = build_invite_service(settings, counter_store, audit)
    app.state.expiry_reconciler = ExpiryReconciler(
        SqlAlchemyInviteStore(async_session_maker),
        audit,
        batch_size=settings.reconciler_batch_size,
        max_batches=settings.reconciler_max_batches,
    )

    # Initialize Background Job Scheduler
    try:
        # Register jobs before starting the scheduler
        register_invite_jobs(app.state.expiry_reconciler, settings.reconciler_hour_utc)

        await start_scheduler()
        logger.info("[OK] Background scheduler started")
    except Exception as e:
        logger.error(f"[FAIL] Background scheduler failed to start: {e}")
        if settings.is_production:
            raise

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down School Portal Invites API...")

    # Stop the scheduler first (wait for running jobs)
    await stop_scheduler()
    unregister_all_jobs()
    logger.info("[OK] Background scheduler stopped")

    await counter_store.close()
    await close_db()
    logger.info("[OK] Cleanup complete")


app = FastAPI(
    title="School Portal Invites API",
    description="Invite and secure-token lifecycle for the school administration portal",
    version="0.1.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api/v1")

if not settings.is_production:
    app.include_router(debug_router)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    return {
        "service": "School Portal Invites API",
        "status": "running",
        "environment": settings.python_env,
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Liveness probe; does not touch dependencies."""
    return {"status": "healthy"}


@app.get("/ready", tags=["Health"])
async def readiness_check(request: Request) -> dict[str, str]:
    """
    Ready once the invite service is wired. Redis being down does not block
    readiness while rate limiting fails open.
    """
    if getattr(request.app.state, "invite_service", None) is None:
        raise HTTPException(status_code=503, detail={"status": "starting"})

    counter_store = request.app.state.counter_store
    redis_state = "up" if counter_store.is_available() else "down"
    return {"status": "ready", "redis": redis_state}
