"""
User model.

Requester identity owned by the trip/expense side of the gateway. Timers only
reference it to show the requester's phone number.
"""
import uuid
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from tripgate.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """User identified by phone number."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    phone_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<User(id={self.id}, phone_number={self.phone_number})>"
