"""
Timer API routes.

Provides endpoints for starting, inspecting and cancelling trip webhook
timers. Starting a timer is public so external integrations can call it;
everything under /api/timer requires the gateway API key.
"""
import re
from datetime import datetime
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

from tripgate.config import settings
from tripgate.dependencies.auth import require_api_key
from tripgate.dependencies.timers import get_scheduler, get_timer_service
from tripgate.logging_config import get_logger
from tripgate.models.timer import OPEN_STATUSES, TimerRecord
from tripgate.routes.metrics import track_timer_started
from tripgate.services.timer_scheduler import TimerScheduler
from tripgate.services.timer_service import TimerService
from tripgate.utils.timer_helpers import (
    calculate_timer_stats,
    describe_deadline,
    format_duration,
    to_iso,
)

logger = get_logger(component="timer_routes")

start_router = APIRouter(prefix="/api/start-timer", tags=["timers"])
router = APIRouter(
    prefix="/api/timer",
    tags=["timers"],
    dependencies=[Depends(require_api_key)],
)

_PHONE_RE = re.compile(r"^\+?\d{8,15}$")


class StartTimerRequest(BaseModel):
    """Request model for starting or restarting a timer."""
    model_config = ConfigDict(populate_by_name=True)

    trip_id: StrictStr | StrictInt = Field(alias="tripId")
    webhook_url: str = Field(alias="webhookUrl")
    phone_number: str | None = Field(default=None, alias="phoneNumber")
    duration: str | None = None

    @field_validator("trip_id")
    @classmethod
    def trip_id_required(cls, value):
        value = str(value).strip()
        if not value:
            raise ValueError("tripId is required")
        return value

    @field_validator("webhook_url")
    @classmethod
    def webhook_url_is_http(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("webhookUrl must be a valid HTTP/HTTPS URL")
        return value.strip()

    @field_validator("phone_number")
    @classmethod
    def phone_number_is_valid(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not _PHONE_RE.match(value.strip()):
            raise ValueError("phoneNumber must be a valid mobile phone number")
        return value.strip()


class StartTimerResponse(BaseModel):
    success: bool = True
    trip_id: str
    restarted: bool
    message: str
    expires_in: str
    expires_at: str


class TimerResponse(BaseModel):
    """Response model for a timer."""
    id: str
    trip_id: str
    webhook_url: str
    sender_id: str | None = None
    phone_number: str | None = None
    status: str
    retry_count: int = 0
    deadline: int
    deadline_iso: str
    last_retry_at: str | None = None
    next_retry_at: str | None = None
    time_remaining: int
    time_remaining_formatted: str
    time_description: str
    timer_status: str
    status_description: str
    urgency: str
    is_expired: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


def timer_to_response(timer: TimerRecord, now: int, described: dict | None = None) -> TimerResponse:
    """Convert a TimerRecord to TimerResponse."""
    described = described or describe_deadline(timer.deadline, now)
    return TimerResponse(
        id=timer.id,
        trip_id=timer.trip_id,
        webhook_url=timer.webhook_url,
        sender_id=timer.sender_id,
        phone_number=timer.phone_number,
        status=timer.status.value,
        retry_count=timer.retry_count,
        deadline=timer.deadline,
        last_retry_at=to_iso(timer.last_retry_at) if timer.last_retry_at else None,
        next_retry_at=to_iso(timer.next_retry_at) if timer.next_retry_at else None,
        created_at=timer.created_at,
        updated_at=timer.updated_at,
        **described,
    )


@start_router.post("", response_model=StartTimerResponse)
async def start_timer(
    request: StartTimerRequest,
    timer_service: TimerService = Depends(get_timer_service),
    scheduler: TimerScheduler = Depends(get_scheduler),
):
    """
    Start a timer for a trip, or restart the trip's running timer.

    The webhook is called once the duration (default 15m) has elapsed.
    """
    try:
        duration_ms = timer_service.resolve_duration(request.duration)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid duration: {e}"
        )

    sender_id = await timer_service.resolve_sender(request.phone_number)

    if settings.SCHEDULER_ENABLED and not scheduler.is_running:
        scheduler.start()

    try:
        timer, restarted = await timer_service.start_or_restart(
            trip_id=request.trip_id,
            webhook_url=request.webhook_url,
            sender_id=sender_id,
            duration=duration_ms,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    track_timer_started(restarted)

    expires_in = format_duration(timer.deadline - timer_service.clock())
    verb = "restarted" if restarted else "started"
    return StartTimerResponse(
        trip_id=timer.trip_id,
        restarted=restarted,
        message=f"Timer {verb}! Will expire in {expires_in}",
        expires_in=expires_in,
        expires_at=to_iso(timer.deadline),
    )


@router.get("/status/{trip_id}", response_model=TimerResponse)
async def get_timer_status(
    trip_id: str,
    timer_service: TimerService = Depends(get_timer_service),
):
    """Get the timer for a trip, including finished (completed/expired) ones."""
    timer = await timer_service.get_by_trip_id(trip_id)

    if not timer:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No timer found for tripId: {trip_id}"
        )

    return timer_to_response(timer, timer_service.clock())


@router.get("/list", response_model=dict)
async def list_timers(
    timer_service: TimerService = Depends(get_timer_service),
    scheduler: TimerScheduler = Depends(get_scheduler),
):
    """List open timers with summary statistics."""
    now = timer_service.clock()
    timers = await timer_service.list_all(statuses=OPEN_STATUSES)
    stats = calculate_timer_stats(timers, now)

    logger.info(
        "timer_list_retrieved",
        total=stats["summary"]["total"],
        expired=stats["summary"]["expired"],
    )

    return {
        "success": True,
        "scheduler": scheduler.status(),
        "summary": stats["summary"],
        "timers": {
            group: [timer_to_response(timer, now, described) for timer, described in entries]
            for group, entries in stats["timers"].items()
        },
    }


@router.delete("/{trip_id}", response_model=dict)
async def cancel_timer(
    trip_id: str,
    timer_service: TimerService = Depends(get_timer_service),
):
    """Cancel the running timer for a trip."""
    removed = await timer_service.cancel(trip_id)

    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No timer found for tripId: {trip_id}"
        )

    return {
        "success": True,
        "trip_id": trip_id,
        "message": "Timer cancelled successfully",
    }


@router.post("/process-expired", response_model=dict)
async def process_expired_timers(
    scheduler: TimerScheduler = Depends(get_scheduler),
):
    """Run one poll cycle now (operational/debugging use)."""
    report = await scheduler.trigger_once()
    return {
        "success": True,
        "message": "Manual processing of expired timers completed",
        "report": report.as_dict(),
    }
