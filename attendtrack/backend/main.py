from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
import redis.asyncio as redis
from apscheduler.schedulers.asyncio import AsyncIOScheduler as Scheduler

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from fastapi.middleware.cors import CORSMiddleware

from .config.config import settings
from .logging.logging_config import setup_logging
from .api import analytics, attendance, auth, barcodes, bulk, security
from .api.utilities.limiter import limiter
from .db.redis_client import RedisDocumentStore
from .services.feed_service import AttendanceFeedService, SubscriptionRegistry
from .tasks.cron import provision_indexes_task, sweep_idle_sessions_task

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Creates the Redis pool, the live feed service and the scheduled jobs on
    startup and tears them down on shutdown.
    """
    app.state.limiter = limiter
    logger.info("Application starting...")

    redis_pool = None
    scheduler = None
    registry = SubscriptionRegistry()
    app.state.subscriptions = registry

    try:
        redis_pool = redis.ConnectionPool.from_url(
            settings.APPLICATION_REDIS_URL, decode_responses=True
        )
        app.state.redis_pool = redis_pool
        store = RedisDocumentStore.from_pool(redis_pool)
        app.state.feed_service = AttendanceFeedService(store, registry=registry)
        logger.info("Redis connection pool created.")

        await provision_indexes_task(store)

        scheduler = Scheduler()
        scheduler.add_job(
            sweep_idle_sessions_task, "interval",
            minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES,
            args=[store], id="sweep_idle_sessions",
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Scheduled jobs started.")

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        app.state.scheduler = None

    yield

    logger.info("Application shutting down...")
    await registry.close_all()
    if getattr(app.state, "scheduler", None):
        app.state.scheduler.shutdown()
        logger.info("Scheduler stopped.")
    if getattr(app.state, "redis_pool", None):
        await app.state.redis_pool.disconnect()
        logger.info("Redis connection pool closed.")


app = FastAPI(
    title="AttendTrack API",
    description="Student attendance tracking: barcode scans, duplicate prevention, bulk tools, analytics and audit.",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(auth.router, prefix="/api/v1")
app.include_router(attendance.router, prefix="/api/v1")
app.include_router(bulk.router, prefix="/api/v1")
app.include_router(analytics.router, prefix="/api/v1")
app.include_router(barcodes.router, prefix="/api/v1")
app.include_router(security.router, prefix="/api/v1")


@app.get("/health", tags=["System"])
def health_check():
    """Liveness probe."""
    return {"status": "ok", "message": "AttendTrack API is running."}
