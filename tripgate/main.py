"""
Tripgate - Trip expense API gateway

FastAPI application entry point. The lifespan owns the timer scheduler.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

# Import observability modules
from tripgate.config import settings
from tripgate.database import AsyncSessionLocal, engine
from tripgate.logging_config import configure_logging, get_logger
from tripgate.sentry_config import configure_sentry
from tripgate.middleware.logging import LoggingMiddleware
from tripgate.routes.metrics import router as metrics_router

# Import route modules
from tripgate.routes.timers import router as timers_router, start_router

from tripgate.services.timer_scheduler import TimerScheduler
from tripgate.services.timer_service import TimerService

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = get_logger(component="app")


def build_timer_stack(session_factory=AsyncSessionLocal) -> tuple[TimerService, TimerScheduler]:
    """Create the timer service and the scheduler handle that polls it."""
    timer_service = TimerService(
        session_factory,
        default_duration=settings.TIMER_DEFAULT_DURATION,
    )
    scheduler = TimerScheduler.from_settings(settings, timer_service)
    return timer_service, scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    timer_service, scheduler = build_timer_stack()
    app.state.timer_service = timer_service
    app.state.scheduler = scheduler

    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("timer_scheduler_disabled", reason="SCHEDULER_ENABLED is false")

    try:
        yield
    finally:
        await scheduler.stop()
        await engine.dispose()
        logger.info("shutdown_complete")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Trip expense API gateway with deferred webhook timers",
    lifespan=lifespan,
)

# Add logging middleware
app.add_middleware(LoggingMiddleware)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include timer routes
app.include_router(start_router)
app.include_router(timers_router)


@app.get("/")
async def root():
    """Service information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "scheduler_running": scheduler.is_running if scheduler else False,
    }
