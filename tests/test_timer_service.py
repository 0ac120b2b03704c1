"""Tests for timer lifecycle operations and guarded transitions."""

import asyncio

import pytest
from sqlalchemy import func, select

from tripgate.models.timer import OPEN_STATUSES, TERMINAL_STATUSES, TimerStatus, WebhookTimer
from tripgate.models.user import User
from tripgate.services.timer_service import TimerService, TimerValidationError
from tripgate.utils.timer_helpers import MAX_DURATION_MS, InvalidDurationError

URL_A = "https://hooks.example.com/a"
URL_B = "https://hooks.example.com/b"


async def count_rows(session_factory, **filters) -> int:
    stmt = select(func.count()).select_from(WebhookTimer)
    for column, value in filters.items():
        stmt = stmt.where(getattr(WebhookTimer, column) == value)
    async with session_factory() as session:
        return (await session.execute(stmt)).scalar_one()


async def open_rows(session_factory, trip_id: str) -> int:
    stmt = select(func.count()).select_from(WebhookTimer).where(
        WebhookTimer.trip_id == trip_id,
        WebhookTimer.status.in_(OPEN_STATUSES),
    )
    async with session_factory() as session:
        return (await session.execute(stmt)).scalar_one()


class TestStartOrRestart:
    async def test_creates_active_timer(self, timer_service, clock):
        timer, restarted = await timer_service.start_or_restart("T1", URL_A, duration="30s")

        assert not restarted
        assert timer.trip_id == "T1"
        assert timer.webhook_url == URL_A
        assert timer.status == TimerStatus.ACTIVE
        assert timer.retry_count == 0
        assert timer.deadline == clock() + 30_000
        assert timer.next_retry_at is None
        assert timer.created_at is not None

    async def test_default_duration_is_fifteen_minutes(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A)
        assert timer.deadline == clock() + 900_000

    async def test_integer_duration_is_milliseconds(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration=1_500)
        assert timer.deadline == clock() + 1_500

    async def test_numeric_trip_id_is_stringified(self, timer_service):
        timer, _ = await timer_service.start_or_restart(42, URL_A, duration="1m")
        assert timer.trip_id == "42"
        assert await timer_service.get_by_trip_id(42) is not None

    async def test_restart_keeps_identity_and_refreshes_fields(self, timer_service, clock):
        first, _ = await timer_service.start_or_restart("T2", URL_A, duration="10m")
        clock.advance(60_000)

        second, restarted = await timer_service.start_or_restart("T2", URL_B, duration="5m")

        assert restarted
        assert second.id == first.id
        assert second.webhook_url == URL_B
        assert second.deadline == clock() + 300_000
        assert second.created_at == first.created_at

    async def test_restart_resets_retry_bookkeeping(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T3", URL_A, duration="1s")
        clock.advance(2_000)
        assert await timer_service.schedule_retry(timer, clock(), 60_000)

        restarted_timer, restarted = await timer_service.start_or_restart("T3", URL_A, duration="1m")

        assert restarted
        assert restarted_timer.status == TimerStatus.ACTIVE
        assert restarted_timer.retry_count == 0
        assert restarted_timer.last_retry_at is None
        assert restarted_timer.next_retry_at is None

    async def test_single_open_timer_per_trip(self, timer_service, session_factory):
        for url in (URL_A, URL_B, URL_A):
            await timer_service.start_or_restart("T4", url, duration="1m")

        assert await open_rows(session_factory, "T4") == 1

    async def test_concurrent_starts_leave_one_open_row(self, timer_service, session_factory):
        results = await asyncio.gather(
            *(timer_service.start_or_restart("T5", URL_A, duration="1m") for _ in range(5))
        )

        assert await open_rows(session_factory, "T5") == 1
        assert len({timer.id for timer, _ in results}) == 1

    async def test_start_after_terminal_creates_new_row(self, timer_service, session_factory, clock):
        first, _ = await timer_service.start_or_restart("T6", URL_A, duration="1s")
        assert await timer_service.mark_completed([first]) == 1

        second, restarted = await timer_service.start_or_restart("T6", URL_B, duration="1m")

        assert not restarted
        assert second.id != first.id
        assert await count_rows(session_factory, trip_id="T6") == 2
        assert await open_rows(session_factory, "T6") == 1

    @pytest.mark.parametrize("duration", ["30x", "0s", "", "-1m"])
    async def test_invalid_duration_writes_nothing(self, timer_service, session_factory, duration):
        with pytest.raises(InvalidDurationError):
            await timer_service.start_or_restart("T7", URL_A, duration=duration)

        assert await count_rows(session_factory) == 0

    async def test_invalid_duration_leaves_existing_timer_untouched(self, timer_service):
        original, _ = await timer_service.start_or_restart("T8", URL_A, duration="1m")

        with pytest.raises(InvalidDurationError):
            await timer_service.start_or_restart("T8", URL_B, duration="30x")

        current = await timer_service.get_by_trip_id("T8")
        assert current.webhook_url == URL_A
        assert current.deadline == original.deadline

    @pytest.mark.parametrize("trip_id,url", [("", URL_A), ("   ", URL_A), (None, URL_A), ("T9", ""), ("T9", None)])
    async def test_missing_fields_rejected(self, timer_service, session_factory, trip_id, url):
        with pytest.raises(TimerValidationError):
            await timer_service.start_or_restart(trip_id, url)

        assert await count_rows(session_factory) == 0

    async def test_non_positive_integer_duration_rejected(self, timer_service):
        with pytest.raises(InvalidDurationError):
            await timer_service.start_or_restart("T10", URL_A, duration=0)

    @pytest.mark.parametrize("duration", ["99999999999999d", "9" * 400 + "s", MAX_DURATION_MS + 1])
    async def test_oversized_duration_writes_nothing(self, timer_service, session_factory, duration):
        with pytest.raises(InvalidDurationError):
            await timer_service.start_or_restart("T11", URL_A, duration=duration)

        assert await count_rows(session_factory) == 0


class TestSender:
    async def test_resolve_sender_and_phone_number_join(self, timer_service, session_factory):
        async with session_factory() as session:
            user = User(phone_number="6281234567890", is_active=True)
            session.add(user)
            await session.commit()
            user_id = user.id

        sender_id = await timer_service.resolve_sender("6281234567890")
        timer, _ = await timer_service.start_or_restart("T1", URL_A, sender_id=sender_id)

        assert sender_id == user_id
        assert timer.sender_id == user_id
        assert timer.phone_number == "6281234567890"

    async def test_unknown_or_missing_sender(self, timer_service):
        assert await timer_service.resolve_sender("6280000000000") is None
        assert await timer_service.resolve_sender(None) is None

        timer, _ = await timer_service.start_or_restart("T2", URL_A)
        assert timer.sender_id is None
        assert timer.phone_number is None


class TestCancel:
    async def test_cancel_removes_open_timer(self, timer_service, session_factory):
        await timer_service.start_or_restart("T1", URL_A, duration="1m")

        assert await timer_service.cancel("T1")
        assert await open_rows(session_factory, "T1") == 0
        assert await timer_service.get_by_trip_id("T1") is None

    async def test_cancel_is_idempotent(self, timer_service):
        await timer_service.start_or_restart("T1", URL_A, duration="1m")

        assert await timer_service.cancel("T1")
        assert not await timer_service.cancel("T1")
        assert not await timer_service.cancel("never-started")

    async def test_cancel_leaves_terminal_rows(self, timer_service, session_factory):
        timer, _ = await timer_service.start_or_restart("T2", URL_A, duration="1s")
        await timer_service.mark_expired(timer)

        assert not await timer_service.cancel("T2")
        assert await count_rows(session_factory, trip_id="T2", status=TimerStatus.EXPIRED) == 1


class TestQueries:
    async def test_get_by_trip_id_returns_finished_timer(self, timer_service):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        await timer_service.mark_completed([timer])

        found = await timer_service.get_by_trip_id("T1")

        assert found.id == timer.id
        assert found.status == TimerStatus.COMPLETED
        assert not found.is_open
        assert found.status in TERMINAL_STATUSES

    async def test_get_by_trip_id_prefers_open_timer(self, timer_service):
        old, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        await timer_service.mark_expired(old)
        new, _ = await timer_service.start_or_restart("T1", URL_B, duration="1m")

        found = await timer_service.get_by_trip_id("T1")

        assert found.id == new.id
        assert found.is_open

    async def test_get_by_trip_id_unknown(self, timer_service):
        assert await timer_service.get_by_trip_id("missing") is None

    async def test_list_all_orders_by_deadline(self, timer_service):
        await timer_service.start_or_restart("late", URL_A, duration="1h")
        await timer_service.start_or_restart("soon", URL_A, duration="1m")
        done, _ = await timer_service.start_or_restart("done", URL_A, duration="30m")
        await timer_service.mark_completed([done])

        everything = await timer_service.list_all()
        open_only = await timer_service.list_all(statuses=OPEN_STATUSES)

        assert [timer.trip_id for timer in everything] == ["soon", "done", "late"]
        assert [timer.trip_id for timer in open_only] == ["soon", "late"]

    async def test_due_queries(self, timer_service, clock):
        expired, _ = await timer_service.start_or_restart("expired", URL_A, duration="1s")
        await timer_service.start_or_restart("running", URL_A, duration="1h")
        retrying, _ = await timer_service.start_or_restart("retrying", URL_A, duration="1s")
        waiting, _ = await timer_service.start_or_restart("waiting", URL_A, duration="1s")

        clock.advance(2_000)
        await timer_service.schedule_retry(retrying, clock(), 0)
        await timer_service.schedule_retry(waiting, clock(), 60_000)

        due_active = await timer_service.get_expired_active()
        due_retries = await timer_service.get_due_retries()

        assert [timer.id for timer in due_active] == [expired.id]
        assert [timer.id for timer in due_retries] == [retrying.id]

    async def test_deadline_boundary_is_due(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")

        assert await timer_service.get_expired_active(timer.deadline - 1) == []
        assert len(await timer_service.get_expired_active(timer.deadline)) == 1


class TestGuardedTransitions:
    async def test_schedule_retry_records_attempt(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        clock.advance(1_000)

        assert await timer_service.schedule_retry(timer, clock(), 60_000)

        current = await timer_service.get_by_trip_id("T1")
        assert current.status == TimerStatus.PENDING_RETRY
        assert current.retry_count == 1
        assert current.last_retry_at == clock()
        assert current.next_retry_at == clock() + 60_000

    async def test_stale_snapshot_is_ignored(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        assert await timer_service.schedule_retry(timer, clock(), 60_000)

        # second transition from the same snapshot no longer matches the row
        assert not await timer_service.schedule_retry(timer, clock(), 60_000)
        assert not await timer_service.mark_expired(timer)
        assert await timer_service.mark_completed([timer]) == 0

        current = await timer_service.get_by_trip_id("T1")
        assert current.status == TimerStatus.PENDING_RETRY
        assert current.retry_count == 1

    async def test_transition_after_cancel_is_noop(self, timer_service, session_factory):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        await timer_service.cancel("T1")

        assert await timer_service.mark_completed([timer]) == 0
        assert not await timer_service.mark_expired(timer)
        assert await count_rows(session_factory) == 0

    async def test_transition_after_restart_is_noop(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        clock.advance(5_000)
        await timer_service.start_or_restart("T1", URL_B, duration="10m")

        assert await timer_service.mark_completed([timer]) == 0

        current = await timer_service.get_by_trip_id("T1")
        assert current.status == TimerStatus.ACTIVE
        assert current.webhook_url == URL_B

    async def test_terminal_states_are_final(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        assert await timer_service.mark_completed([timer]) == 1
        completed = await timer_service.get_by_trip_id("T1")

        assert not await timer_service.mark_expired(completed)
        assert not await timer_service.schedule_retry(completed, clock(), 60_000)
        assert (await timer_service.get_by_trip_id("T1")).status == TimerStatus.COMPLETED
        assert await timer_service.mark_completed([completed]) == 0

    async def test_expired_timer_is_not_reopened(self, timer_service, clock):
        timer, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        assert await timer_service.mark_expired(timer)
        expired = await timer_service.get_by_trip_id("T1")

        assert not await timer_service.schedule_retry(expired, clock(), 60_000)
        assert await timer_service.mark_completed([expired]) == 0
        assert not await timer_service.mark_expired(expired)

        current = await timer_service.get_by_trip_id("T1")
        assert current.status == TimerStatus.EXPIRED
        assert current.retry_count == 0
        assert current.next_retry_at is None

    async def test_mark_completed_counts_only_matching_rows(self, timer_service):
        first, _ = await timer_service.start_or_restart("T1", URL_A, duration="1s")
        second, _ = await timer_service.start_or_restart("T2", URL_A, duration="1s")
        third, _ = await timer_service.start_or_restart("T3", URL_A, duration="1s")
        await timer_service.cancel("T3")

        assert await timer_service.mark_completed([first, second, third]) == 2
        assert await timer_service.mark_completed([]) == 0


async def test_separate_services_share_the_store(session_factory, clock):
    writer = TimerService(session_factory, clock=clock)
    reader = TimerService(session_factory, clock=clock)

    timer, _ = await writer.start_or_restart("shared", URL_A, duration="1m")

    assert (await reader.get_by_trip_id("shared")).id == timer.id
