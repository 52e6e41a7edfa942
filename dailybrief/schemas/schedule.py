from pydantic import BaseModel, ConfigDict

REQUIRED_SCHEDULE_FIELDS = ("user_id", "delivery_time_local", "timezone", "recipient_id")


class UserScheduleEntry(BaseModel):
    """Read-only snapshot of one registry row, taken once per sync cycle."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    timezone: str | None = None
    delivery_time_local: str | None = None
    recipient_id: str | None = None
    contact_address: str | None = None

    def missing_fields(self) -> list[str]:
        """Required scheduling fields that are empty on this entry."""
        return [name for name in REQUIRED_SCHEDULE_FIELDS if not getattr(self, name)]

    @property
    def is_schedulable(self) -> bool:
        return not self.missing_fields()

    @property
    def schedule_fields(self) -> tuple[str | None, ...]:
        """Fields whose change requires replacing the user's trigger."""
        return (self.timezone, self.delivery_time_local, self.recipient_id, self.contact_address)


class TriggerInfo(BaseModel):
    """Public view of an active trigger."""

    user_id: str
    cron: str
    utc_time: str
    local_time: str
    timezone: str
    next_fire_time: str | None = None
