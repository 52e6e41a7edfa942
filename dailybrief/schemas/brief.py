from pydantic import BaseModel, Field


class BusinessPeriod(BaseModel):
    """Window of mail activity a brief covers, formatted in the user's timezone."""

    start: str
    end: str
    timezone: str


class EmailSummary(BaseModel):
    """Mail data gathered for one brief."""

    unread_emails: list[dict] = Field(default_factory=list)
    important_emails: list[dict] = Field(default_factory=list)
    vip_emails: list[dict] = Field(default_factory=list)
    unread_count: int = 0
    important_count: int = 0
    vip_count: int = 0
    business_period: BusinessPeriod | None = None


class CalendarSummary(BaseModel):
    """Calendar data gathered for one brief."""

    todays_events: list[dict] = Field(default_factory=list)
    upcoming_events: list[dict] = Field(default_factory=list)
    todays_event_count: int = 0
    upcoming_event_count: int = 0
