"""Records whose last write to Jira failed"""
from sqlalchemy import Column, Integer, String, DateTime, Text, UniqueConstraint
from datetime import datetime
from jirasync.models.base import Base


class FailedRecord(Base):
    """A GitHub issue to re-read and re-apply on the next run.

    Rows are removed once the record is written successfully. They are kept
    apart from the watermark, which only follows fetch progress.
    """

    __tablename__ = "failed_records"
    __table_args__ = (
        UniqueConstraint("project_name", "source_number", name="uq_failed_records_project_number"),
    )

    id = Column(Integer, primary_key=True, index=True)

    project_name = Column(String(255), nullable=False, index=True)
    source_number = Column(Integer, nullable=False)
    global_id = Column(String(255), nullable=False)
    source_url = Column(String(500), nullable=True)
    source_updated_at = Column(String(64), nullable=True)

    last_error = Column(Text, nullable=True)
    attempts = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<FailedRecord(project={self.project_name}, number={self.source_number})>"
