"""User delivery preferences: the registry the scheduler synchronizes against."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from dailybrief.core.datetime_utils import utc_now
from dailybrief.models.base import Base, TimestampMixin


class UserPreference(Base, TimestampMixin):
    """One row per registered user: where and when their brief goes.

    Owned by the product that registers users; the scheduler only reads it.
    """

    __tablename__ = "user_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    timezone: Mapped[str | None] = mapped_column(String(64))
    delivery_time: Mapped[str | None] = mapped_column(String(8))  # HH:MM or HH:MM:SS
    recipient_id: Mapped[str | None] = mapped_column(String(64))  # external chat user id
    contact_address: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<UserPreference {self.user_id} {self.delivery_time} {self.timezone}>"
