"""
Router for the retry queue (admin)
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..exceptions import NotFound
from ..models.audit_log import AdminAction, AdminActionLog
from ..models.job_queue import JobStatus
from ..schemas.job_queue import RetryJobResponse
from ..services.job_queue import JobQueue
from ..utils.dependencies import AdminIdentity, get_current_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/job-queue", tags=["Job Queue"])


@router.get("", response_model=List[RetryJobResponse])
@router.get("/", response_model=List[RetryJobResponse], include_in_schema=False)
def list_jobs(
    status: Optional[JobStatus] = Query(None),
    job_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    return JobQueue(db).list_jobs(status.value if status else None, job_type, limit)


@router.get("/{job_id}", response_model=RetryJobResponse)
def get_job(
    job_id: str,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    job = JobQueue(db).get_job(job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found", details={"job_id": job_id})
    return job


@router.post("/{job_id}/retry", response_model=RetryJobResponse)
def retry_job(
    job_id: str,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    """Give a permanently failed job a fresh retry budget."""
    job = JobQueue(db).retry_failed_job(job_id)
    AdminActionLog.log(
        db, admin, AdminAction.JOB_RETRY, "job", job_id,
        description=f"Re-queued {job.job_type}",
    )
    db.commit()
    db.refresh(job)
    return job


@router.delete("/{job_id}")
def cancel_job(
    job_id: str,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    cancelled = JobQueue(db).cancel_job(job_id)
    if not cancelled:
        raise NotFound(f"No pending job {job_id}", details={"job_id": job_id})
    return {"success": True, "job_id": job_id}
