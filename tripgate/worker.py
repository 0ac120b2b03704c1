"""
ARQ Background Worker for Tripgate.

Runs timer poll cycles as an arq cron job, for deployments that keep polling
out of the API process (set SCHEDULER_ENABLED=false on the API).

Use: arq tripgate.worker.WorkerSettings
"""
import asyncio

from arq import cron
from arq.connections import RedisSettings

from tripgate.config import settings
from tripgate.database import AsyncSessionLocal, engine
from tripgate.logging_config import configure_logging, get_logger
from tripgate.sentry_config import configure_sentry
from tripgate.services.timer_scheduler import TimerScheduler
from tripgate.services.timer_service import TimerService

logger = get_logger(component="worker")


async def startup(ctx: dict):
    """Build the scheduler handle shared by every cron run of this worker."""
    configure_logging()
    configure_sentry()
    timer_service = TimerService(
        AsyncSessionLocal,
        default_duration=settings.TIMER_DEFAULT_DURATION,
    )
    ctx["scheduler"] = TimerScheduler.from_settings(settings, timer_service)
    logger.info("worker_started", redis=settings.REDIS_URL)


async def shutdown(ctx: dict):
    await engine.dispose()
    logger.info("worker_stopped")


async def poll_timers(ctx: dict) -> dict:
    """Run one poll cycle and return its counts as the job result."""
    scheduler: TimerScheduler = ctx["scheduler"]
    report = await scheduler.run_cycle()
    return report.as_dict()


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq tripgate.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = [poll_timers]
    cron_jobs = [
        # unique: concurrent workers never enqueue the same minute twice
        cron(poll_timers, second=0, run_at_startup=True, unique=True, timeout=300),
    ]
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = 300
    max_tries = 1


async def main():
    """Print how to run the worker."""
    print("Use: arq tripgate.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


if __name__ == "__main__":
    asyncio.run(main())
