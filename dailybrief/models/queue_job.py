"""Persisted queue of due brief deliveries (fallback path)."""

import enum
from datetime import datetime

from sqlalchemy import Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dailybrief.core.datetime_utils import utc_now
from dailybrief.models.base import Base, TimestampMixin


class QueueJobStatus(str, enum.Enum):
    """Queue job lifecycle: pending -> processing -> completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueJob(Base, TimestampMixin):
    """A brief that became due for a user at a given UTC minute."""

    __tablename__ = "brief_queue"
    __table_args__ = (UniqueConstraint("user_id", "scheduled_at", name="uq_brief_queue_user_minute"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    scheduled_at: Mapped[datetime] = mapped_column(index=True)  # naive UTC, minute precision
    status: Mapped[QueueJobStatus] = mapped_column(
        Enum(
            QueueJobStatus,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=20,
        ),
        default=QueueJobStatus.PENDING,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<QueueJob {self.id} user={self.user_id} at={self.scheduled_at} {self.status.value}>"
