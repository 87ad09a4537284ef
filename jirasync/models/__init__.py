"""Database models"""

from jirasync.models.base import Base
from jirasync.models.failed_record import FailedRecord
from jirasync.models.sync_log import SyncLog

__all__ = [
    "Base",
    "FailedRecord",
    "SyncLog",
]
