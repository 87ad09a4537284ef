"""Sync log model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum
from datetime import datetime
import enum
from jirasync.models.base import Base


class SyncStatus(str, enum.Enum):
    """Sync status enumeration"""
    SUCCESS = "success"
    FAILED = "failed"


class SyncLog(Base):
    """Log of sync operations, one row per project pass or failed record"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    project_name = Column(String(255), nullable=False, index=True)

    # Record information (empty for project-level rows)
    source_number = Column(Integer, nullable=True)
    global_id = Column(String(255), nullable=True)
    jira_key = Column(String(64), nullable=True)

    status = Column(Enum(SyncStatus), nullable=False)
    message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<SyncLog(project={self.project_name}, status={self.status})>"
