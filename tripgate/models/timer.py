"""
Webhook timer model.

One row per scheduled trip notification. At most one open row (active or
pending_retry) may exist per trip; terminal rows are kept for status lookups.
"""
import uuid
import enum
from dataclasses import dataclass
from datetime import datetime
from sqlalchemy import (
    String, Text, Integer, BigInteger, ForeignKey, Index, Enum as SQLEnum, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from tripgate.models.base import Base, TimestampMixin


class TimerStatus(str, enum.Enum):
    """Timer status enum."""
    ACTIVE = "active"
    PENDING_RETRY = "pending_retry"
    COMPLETED = "completed"
    EXPIRED = "expired"


OPEN_STATUSES = (TimerStatus.ACTIVE, TimerStatus.PENDING_RETRY)
TERMINAL_STATUSES = (TimerStatus.COMPLETED, TimerStatus.EXPIRED)

_OPEN_ROW_CLAUSE = text("status IN ('active', 'pending_retry')")


class WebhookTimer(Base, TimestampMixin):
    """
    Deferred webhook notification for a trip.

    deadline, last_retry_at and next_retry_at are epoch milliseconds.
    """
    __tablename__ = "webhook_timers"
    __table_args__ = (
        Index("idx_webhook_timers_status_deadline", "status", "deadline"),
        Index("idx_webhook_timers_status_next_retry", "status", "next_retry_at"),
        Index(
            "uq_webhook_timers_open_trip",
            "trip_id",
            unique=True,
            postgresql_where=_OPEN_ROW_CLAUSE,
            sqlite_where=_OPEN_ROW_CLAUSE,
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    trip_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    sender_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    deadline: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[TimerStatus] = mapped_column(
        SQLEnum(
            TimerStatus,
            native_enum=False,
            length=20,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=TimerStatus.ACTIVE
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    next_retry_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Relationships
    sender = relationship("User", lazy="joined")

    def __repr__(self):
        return f"<WebhookTimer(id={self.id}, trip_id={self.trip_id}, status={self.status})>"


@dataclass(frozen=True)
class TimerRecord:
    """Detached snapshot of a timer row, joined with requester metadata."""
    id: str
    trip_id: str
    webhook_url: str
    sender_id: str | None
    phone_number: str | None
    deadline: int
    status: TimerStatus
    retry_count: int
    last_retry_at: int | None
    next_retry_at: int | None
    created_at: datetime | None
    updated_at: datetime | None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @classmethod
    def from_model(cls, timer: WebhookTimer) -> "TimerRecord":
        return cls(
            id=timer.id,
            trip_id=timer.trip_id,
            webhook_url=timer.webhook_url,
            sender_id=timer.sender_id,
            phone_number=timer.sender.phone_number if timer.sender else None,
            deadline=timer.deadline,
            status=TimerStatus(timer.status),
            retry_count=timer.retry_count,
            last_retry_at=timer.last_retry_at,
            next_retry_at=timer.next_retry_at,
            created_at=timer.created_at,
            updated_at=timer.updated_at,
        )
