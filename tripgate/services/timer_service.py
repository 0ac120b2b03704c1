"""
Timer service for deferred webhook timers.

Every state change is a conditional UPDATE/DELETE executed by the database:
a transition only applies while the row still looks the way the caller last
saw it. Overlapping pollers (in this process or another) therefore cannot
double-process a timer, and a cancel racing a poll cycle turns the late
reconciliation into a no-op.
"""
from collections.abc import Callable, Iterable, Sequence

from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tripgate.logging_config import get_logger
from tripgate.models.timer import OPEN_STATUSES, TimerRecord, TimerStatus, WebhookTimer
from tripgate.models.user import User
from tripgate.utils.timer_helpers import (
    InvalidDurationError,
    check_duration_ms,
    now_ms,
    parse_duration,
)

logger = get_logger(component="timer_service")

DEFAULT_DURATION = "15m"


class TimerValidationError(ValueError):
    """Raised when a timer request is missing required data."""


def _guard(timer: TimerRecord):
    """
    Match the row only while it is still open and in the state timer was
    read in. Finished rows never match.
    """
    return and_(
        WebhookTimer.id == timer.id,
        WebhookTimer.status.in_(OPEN_STATUSES),
        WebhookTimer.status == timer.status,
        WebhookTimer.retry_count == timer.retry_count,
        WebhookTimer.deadline == timer.deadline,
    )


class TimerService:
    """Lifecycle operations and guarded transitions for webhook timers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], int] = now_ms,
        default_duration: str = DEFAULT_DURATION,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.default_duration = default_duration

    def resolve_duration(self, duration: str | int | None) -> int:
        """
        Turn a duration string or millisecond count into milliseconds.

        Raises:
            InvalidDurationError: on malformed or non-positive durations
        """
        if duration is None:
            duration = self.default_duration
        if isinstance(duration, bool):
            raise InvalidDurationError("Duration must be a string")
        if isinstance(duration, int):
            return check_duration_ms(duration)
        return parse_duration(duration)

    async def start_or_restart(
        self,
        trip_id: str | int,
        webhook_url: str,
        sender_id: str | None = None,
        duration: str | int | None = None,
    ) -> tuple[TimerRecord, bool]:
        """
        Start a timer for a trip, or restart the trip's open timer.

        A restart keeps the row id and created_at, refreshes webhook_url,
        sender_id and deadline, and resets status and retry bookkeeping.

        Args:
            trip_id: Trip identifier
            webhook_url: URL notified once the timer expires
            sender_id: Optional requesting user id
            duration: Duration string ("15s", "30m", ...), milliseconds, or
                None for the default duration

        Returns:
            (timer, restarted)

        Raises:
            TimerValidationError / InvalidDurationError before anything is written
        """
        trip_id = str(trip_id).strip() if trip_id is not None else ""
        if not trip_id:
            raise TimerValidationError("tripId is required")
        if not webhook_url or not str(webhook_url).strip():
            raise TimerValidationError("webhookUrl is required")
        duration_ms = self.resolve_duration(duration)

        try:
            return await self._write_timer(trip_id, str(webhook_url), sender_id, duration_ms)
        except IntegrityError:
            # another writer inserted the open row first; retry as a restart
            logger.info("timer_insert_conflict", trip_id=trip_id)
        return await self._write_timer(trip_id, str(webhook_url), sender_id, duration_ms)

    async def _write_timer(
        self,
        trip_id: str,
        webhook_url: str,
        sender_id: str | None,
        duration_ms: int,
    ) -> tuple[TimerRecord, bool]:
        async with self.session_factory() as session:
            async with session.begin():
                deadline = self.clock() + duration_ms
                timer_id = None

                existing = await self._open_timer(session, trip_id)
                if existing is not None:
                    result = await session.execute(
                        update(WebhookTimer)
                        .where(
                            WebhookTimer.id == existing.id,
                            WebhookTimer.status.in_(OPEN_STATUSES),
                        )
                        .values(
                            webhook_url=webhook_url,
                            sender_id=sender_id,
                            deadline=deadline,
                            status=TimerStatus.ACTIVE,
                            retry_count=0,
                            last_retry_at=None,
                            next_retry_at=None,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        timer_id = existing.id

                restarted = timer_id is not None
                if not restarted:
                    timer = WebhookTimer(
                        trip_id=trip_id,
                        webhook_url=webhook_url,
                        sender_id=sender_id,
                        deadline=deadline,
                        status=TimerStatus.ACTIVE,
                        retry_count=0,
                    )
                    session.add(timer)
                    await session.flush()
                    timer_id = timer.id

            record = await self._load(session, timer_id)

        logger.info(
            "timer_restarted" if restarted else "timer_started",
            trip_id=trip_id,
            deadline=record.deadline,
        )
        return record, restarted

    async def _open_timer(self, session: AsyncSession, trip_id: str) -> WebhookTimer | None:
        stmt = select(WebhookTimer).where(
            WebhookTimer.trip_id == trip_id,
            WebhookTimer.status.in_(OPEN_STATUSES),
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _load(self, session: AsyncSession, timer_id: str) -> TimerRecord:
        stmt = (
            select(WebhookTimer)
            .where(WebhookTimer.id == timer_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return TimerRecord.from_model(result.scalar_one())

    async def _select(self, stmt) -> list[TimerRecord]:
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [TimerRecord.from_model(timer) for timer in result.scalars().all()]

    async def resolve_sender(self, phone_number: str | None) -> str | None:
        """Get the user id for a requester phone number, if the user exists."""
        if not phone_number:
            return None
        async with self.session_factory() as session:
            result = await session.execute(select(User.id).where(User.phone_number == phone_number))
            user_id = result.scalar_one_or_none()
        if user_id is None:
            logger.warning("timer_sender_not_found", phone_number=phone_number)
        return user_id

    async def cancel(self, trip_id: str | int) -> bool:
        """
        Remove the open timer for a trip.

        Returns:
            True if a timer was found and removed
        """
        trip_id = str(trip_id)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(WebhookTimer)
                    .where(
                        WebhookTimer.trip_id == trip_id,
                        WebhookTimer.status.in_(OPEN_STATUSES),
                    )
                    .execution_options(synchronize_session=False)
                )
                removed = result.rowcount > 0

        if removed:
            logger.info("timer_cancelled", trip_id=trip_id)
        return removed

    async def get_by_trip_id(self, trip_id: str | int) -> TimerRecord | None:
        """Get the trip's open timer, or its most recent finished one."""
        open_first = case((WebhookTimer.status.in_(OPEN_STATUSES), 0), else_=1)
        stmt = (
            select(WebhookTimer)
            .where(WebhookTimer.trip_id == str(trip_id))
            .order_by(open_first, WebhookTimer.updated_at.desc(), WebhookTimer.deadline.desc())
            .limit(1)
        )
        timers = await self._select(stmt)
        return timers[0] if timers else None

    async def list_all(self, statuses: Iterable[TimerStatus] | None = None) -> list[TimerRecord]:
        """List timers ordered by ascending deadline, optionally filtered by status."""
        stmt = select(WebhookTimer).order_by(WebhookTimer.deadline.asc())
        if statuses is not None:
            stmt = stmt.where(WebhookTimer.status.in_(list(statuses)))
        return await self._select(stmt)

    async def get_expired_active(self, now: int | None = None) -> list[TimerRecord]:
        """Active timers whose deadline has passed."""
        now = self.clock() if now is None else now
        stmt = (
            select(WebhookTimer)
            .where(
                WebhookTimer.status == TimerStatus.ACTIVE,
                WebhookTimer.deadline <= now,
            )
            .order_by(WebhookTimer.deadline.asc())
        )
        return await self._select(stmt)

    async def get_due_retries(self, now: int | None = None) -> list[TimerRecord]:
        """Timers waiting for a retry whose backoff has elapsed."""
        now = self.clock() if now is None else now
        stmt = (
            select(WebhookTimer)
            .where(
                WebhookTimer.status == TimerStatus.PENDING_RETRY,
                WebhookTimer.next_retry_at <= now,
            )
            .order_by(WebhookTimer.next_retry_at.asc())
        )
        return await self._select(stmt)

    async def _guarded_update(self, condition, **values) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookTimer)
                    .where(condition)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                count = result.rowcount
        return count

    async def mark_completed(self, timers: Sequence[TimerRecord]) -> int:
        """
        Move delivered timers to completed in one statement.

        Returns:
            Number of rows actually transitioned
        """
        if not timers:
            return 0
        return await self._guarded_update(
            or_(*[_guard(timer) for timer in timers]),
            status=TimerStatus.COMPLETED,
            next_retry_at=None,
        )

    async def mark_expired(self, timer: TimerRecord) -> bool:
        """Give up on a timer. False if the row changed since it was read."""
        count = await self._guarded_update(
            _guard(timer),
            status=TimerStatus.EXPIRED,
            next_retry_at=None,
        )
        return count == 1

    async def schedule_retry(self, timer: TimerRecord, now: int, delay_ms: int) -> bool:
        """Record a failed attempt and schedule the next one."""
        count = await self._guarded_update(
            _guard(timer),
            status=TimerStatus.PENDING_RETRY,
            retry_count=timer.retry_count + 1,
            last_retry_at=now,
            next_retry_at=now + delay_ms,
        )
        return count == 1
