from dailybrief.models.base import Base
from dailybrief.models.delivery_record import DeliveryRecord, DeliverySource, DeliveryStatus
from dailybrief.models.queue_job import QueueJob, QueueJobStatus
from dailybrief.models.user_preference import UserPreference

__all__ = [
    "Base",
    "UserPreference",
    "DeliveryRecord",
    "DeliverySource",
    "DeliveryStatus",
    "QueueJob",
    "QueueJobStatus",
]
