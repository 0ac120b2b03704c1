"""
Timer scheduler.

Polls the timer store on a fixed interval, delivers webhooks for every due
timer concurrently, then reconciles all outcomes back into the store:

    active        -> completed | pending_retry (expired if retries are disabled)
    pending_retry -> completed | pending_retry (retry_count + 1) | expired

Cycles never overlap within a process. Delivery failures and per-timer store
errors are logged and counted; they never escape a cycle.
"""
import asyncio
from dataclasses import asdict, dataclass

from tripgate.logging_config import get_logger
from tripgate.models.timer import TimerRecord
from tripgate.routes import metrics
from tripgate.sentry_config import capture_exception
from tripgate.services.retry_policy import RetryPolicy
from tripgate.services.timer_service import TimerService
from tripgate.services.webhook_service import (
    DEFAULT_MESSAGE,
    DeliveryFailure,
    DeliveryResult,
    WebhookClient,
    build_payload,
    classify_exception,
)

logger = get_logger(component="timer_scheduler")


@dataclass
class CycleReport:
    """Counts for one poll cycle."""
    started_at: int
    due: int = 0
    delivered: int = 0
    failed: int = 0
    completed: int = 0
    retried: int = 0
    expired: int = 0
    skipped: int = 0
    store_errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class TimerScheduler:
    """
    Handle for the polling loop.

    Owned by whoever starts the process (the FastAPI lifespan or the arq
    worker startup hook).
    """

    def __init__(
        self,
        timer_service: TimerService,
        webhook_client: WebhookClient,
        retry_policy: RetryPolicy | None = None,
        interval_seconds: float = 60,
        max_concurrent_deliveries: int = 10,
        message: str = DEFAULT_MESSAGE,
    ):
        if max_concurrent_deliveries < 1:
            raise ValueError("max_concurrent_deliveries must be >= 1")
        self.timer_service = timer_service
        self.webhook_client = webhook_client
        self.retry_policy = retry_policy or RetryPolicy()
        self.interval_seconds = interval_seconds
        self.max_concurrent_deliveries = max_concurrent_deliveries
        self.message = message

        self._task: asyncio.Task | None = None
        self._cycle_lock = asyncio.Lock()
        self.cycles_run = 0
        self.last_report: CycleReport | None = None

    @classmethod
    def from_settings(cls, settings, timer_service: TimerService) -> "TimerScheduler":
        return cls(
            timer_service=timer_service,
            webhook_client=WebhookClient.from_settings(settings),
            retry_policy=RetryPolicy.from_settings(settings),
            interval_seconds=settings.TIMER_POLL_INTERVAL_SECONDS,
            max_concurrent_deliveries=settings.TIMER_MAX_CONCURRENT_DELIVERIES,
            message=settings.WEBHOOK_MESSAGE,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the polling loop. Returns False if it was already running."""
        if self.is_running:
            logger.warning("timer_scheduler_already_running")
            return False
        self._task = asyncio.create_task(self._run_forever(), name="timer-scheduler")
        logger.info("timer_scheduler_started", interval_seconds=self.interval_seconds)
        return True

    async def stop(self):
        """Stop the polling loop, cancelling a cycle in progress."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            # the caller of stop() was cancelled too
            if current is not None and current.cancelling():
                raise
        logger.info("timer_scheduler_stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "cycle_in_progress": self._cycle_lock.locked(),
            "interval_seconds": self.interval_seconds,
            "cycles_run": self.cycles_run,
            "last_cycle": self.last_report.as_dict() if self.last_report else None,
        }

    async def trigger_once(self) -> CycleReport:
        """Run one poll cycle now, waiting for a running cycle to finish first."""
        logger.info("manual_timer_check_triggered")
        return await self.run_cycle()

    async def _run_forever(self):
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("poll_cycle_crashed", error=str(e), exc_info=True)
                capture_exception(e)
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self.interval_seconds - elapsed))

    async def run_cycle(self) -> CycleReport:
        async with self._cycle_lock:
            report = await self._poll()
            self.cycles_run += 1
            self.last_report = report
            metrics.track_poll_cycle(report.due)
            return report

    async def _poll(self) -> CycleReport:
        service = self.timer_service
        now = service.clock()
        report = CycleReport(started_at=now)

        try:
            due = await service.get_expired_active(now)
            due += await service.get_due_retries(now)
        except Exception as e:
            report.store_errors += 1
            logger.error("due_timer_query_failed", error=str(e))
            capture_exception(e)
            return report

        # expired actives and due retries never share a row, but be strict
        due = list({timer.id: timer for timer in due}.values())
        report.due = len(due)
        if not due:
            return report

        logger.info("processing_due_timers", count=len(due))

        semaphore = asyncio.Semaphore(self.max_concurrent_deliveries)
        outcomes = await asyncio.gather(
            *(self._deliver(timer, semaphore) for timer in due),
            return_exceptions=True,
        )

        successes: list[TimerRecord] = []
        failures: list[tuple[TimerRecord, DeliveryFailure]] = []
        for timer, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                outcome = classify_exception(outcome)
            if outcome.ok:
                successes.append(timer)
            else:
                failures.append((timer, outcome))

        report.delivered = len(successes)
        report.failed = len(failures)

        if failures:
            logger.warning(
                "timer_notifications_failed",
                failed=len(failures),
                total=len(due),
            )
        else:
            logger.info("timer_notifications_sent", total=len(due))

        await self._complete(successes, report)
        for timer, failure in failures:
            try:
                await self._reconcile_failure(timer, failure, now, report)
            except Exception as e:
                report.store_errors += 1
                logger.error("timer_reconcile_failed", trip_id=timer.trip_id, error=str(e))
                capture_exception(e)

        logger.info("poll_cycle_completed", **report.as_dict())
        return report

    async def _deliver(self, timer: TimerRecord, semaphore: asyncio.Semaphore) -> DeliveryResult:
        async with semaphore:
            payload = build_payload(timer, self.timer_service.clock(), self.message)
            logger.info(
                "sending_timer_notification",
                trip_id=timer.trip_id,
                retry_count=timer.retry_count,
            )
            result = await self.webhook_client.deliver(timer.webhook_url, payload)
        metrics.track_webhook_sent("success" if result.ok else result.error_kind)
        return result

    async def _complete(self, timers: list[TimerRecord], report: CycleReport):
        """Mark delivered timers completed, one row at a time if the bulk update fails."""
        if not timers:
            return
        service = self.timer_service
        try:
            count = await service.mark_completed(timers)
            report.completed += count
            report.skipped += len(timers) - count
        except Exception as e:
            logger.error("bulk_complete_failed", count=len(timers), error=str(e))
            capture_exception(e)
            for timer in timers:
                try:
                    if await service.mark_completed([timer]):
                        report.completed += 1
                    else:
                        report.skipped += 1
                except Exception as e:
                    report.store_errors += 1
                    logger.error("timer_complete_failed", trip_id=timer.trip_id, error=str(e))
        metrics.track_timers_completed(report.completed)

    async def _reconcile_failure(
        self,
        timer: TimerRecord,
        failure: DeliveryFailure,
        now: int,
        report: CycleReport,
    ):
        service = self.timer_service
        # every failure walks the retry ladder
        delay = self.retry_policy.next_delay(timer.retry_count)

        if delay is None:
            if await service.mark_expired(timer):
                report.expired += 1
                metrics.track_timer_expired()
                logger.warning(
                    "timer_expired",
                    trip_id=timer.trip_id,
                    retry_count=timer.retry_count,
                    error_kind=failure.error_kind,
                    status_code=failure.status_code,
                )
            else:
                report.skipped += 1
            return

        if await service.schedule_retry(timer, now, delay):
            report.retried += 1
            metrics.track_timer_retry()
            logger.info(
                "timer_retry_scheduled",
                trip_id=timer.trip_id,
                retry_count=timer.retry_count + 1,
                delay_ms=delay,
                error_kind=failure.error_kind,
                retryable=failure.retryable,
            )
        else:
            report.skipped += 1
