"""Append-only delivery history used for dedup and operational status."""

import enum
from datetime import datetime

from sqlalchemy import Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dailybrief.core.datetime_utils import utc_now
from dailybrief.models.base import Base


class DeliveryStatus(str, enum.Enum):
    """Outcome of one firing attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeliverySource(str, enum.Enum):
    """What caused the firing."""

    TRIGGER = "trigger"
    QUEUE = "queue"
    MANUAL = "manual"


class DeliveryRecord(Base):
    """One row per firing attempt. Rows are never updated after insert."""

    __tablename__ = "delivery_records"
    __table_args__ = (Index("ix_delivery_records_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(
            DeliveryStatus,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=20,
        )
    )
    source: Mapped[DeliverySource] = mapped_column(
        Enum(
            DeliverySource,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=20,
        ),
        default=DeliverySource.TRIGGER,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<DeliveryRecord user={self.user_id} status={self.status.value} at={self.created_at}>"
