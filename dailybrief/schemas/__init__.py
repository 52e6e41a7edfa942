from dailybrief.schemas.brief import BusinessPeriod, CalendarSummary, EmailSummary
from dailybrief.schemas.schedule import TriggerInfo, UserScheduleEntry

__all__ = [
    "BusinessPeriod",
    "CalendarSummary",
    "EmailSummary",
    "TriggerInfo",
    "UserScheduleEntry",
]
