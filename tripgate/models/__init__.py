"""
Database models.

Importing this package registers every table with Base.metadata.
"""
from tripgate.models.base import Base, TimestampMixin
from tripgate.models.user import User
from tripgate.models.timer import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    TimerRecord,
    TimerStatus,
    WebhookTimer,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "User",
    "WebhookTimer",
    "TimerStatus",
    "TimerRecord",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
]
