"""Sync management endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime

from jirasync.config import settings
from jirasync.exceptions import ConfigurationError, SyncInProgressError
from jirasync.models.base import get_db
from jirasync.models import FailedRecord, SyncLog
from jirasync.services.sync_service import run_from_files
from jirasync.services.watermark import WatermarkStore

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncLogResponse(BaseModel):
    id: int
    project_name: str
    source_number: Optional[int] = None
    global_id: Optional[str] = None
    jira_key: Optional[str] = None
    status: str
    message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class FailedRecordResponse(BaseModel):
    id: int
    project_name: str
    source_number: int
    global_id: str
    source_url: Optional[str] = None
    source_updated_at: Optional[str] = None
    last_error: Optional[str] = None
    attempts: int
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProjectResultResponse(BaseModel):
    name: str
    next_watermark: str
    status: str
    stats: Dict[str, int] = {}
    error: Optional[str] = None


class SyncRunResponse(BaseModel):
    success: bool
    projects: List[ProjectResultResponse]


class WatermarkResponse(BaseModel):
    sync_project_name: str
    after_date: str


@router.post("/trigger", response_model=SyncRunResponse)
def trigger_sync(db: Session = Depends(get_db)):
    """Run one sync pass now"""
    try:
        result = run_from_files(db, settings)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    return SyncRunResponse(
        success=result.success,
        projects=[
            ProjectResultResponse(
                name=p.name,
                next_watermark=p.next_watermark,
                status=p.status.value,
                stats=p.stats,
                error=p.error,
            )
            for p in result.projects
        ],
    )


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    limit: int = 100,
    project_name: str = None,
    db: Session = Depends(get_db)
):
    """List sync logs"""
    query = db.query(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    if project_name:
        query = query.filter(SyncLog.project_name == project_name)
    return query.limit(limit).all()


@router.get("/state", response_model=List[WatermarkResponse])
def get_state():
    """Persisted watermarks"""
    try:
        store = WatermarkStore.from_file(settings.sync_state_path)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return [
        WatermarkResponse(sync_project_name=name, after_date=after)
        for name, after in store.persisted.items()
    ]


@router.get("/failed-records", response_model=List[FailedRecordResponse])
def list_failed_records(
    project_name: str = None,
    db: Session = Depends(get_db)
):
    """Records waiting to be retried on the next run"""
    query = db.query(FailedRecord).order_by(FailedRecord.project_name, FailedRecord.id)
    if project_name:
        query = query.filter(FailedRecord.project_name == project_name)
    return query.all()
