"""
Timer dependencies for FastAPI.

The service and scheduler handles are created by the application lifespan
and stored on app.state.
"""
from fastapi import Request

from tripgate.services.timer_scheduler import TimerScheduler
from tripgate.services.timer_service import TimerService


def get_timer_service(request: Request) -> TimerService:
    return request.app.state.timer_service


def get_scheduler(request: Request) -> TimerScheduler:
    return request.app.state.scheduler
