"""
Router for scheduled maintenance
For deployments where an external cron drives the workers instead of the
in-process scheduler. Every endpoint requires ``Authorization: Bearer <CRON_SECRET>``.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.action_lock_service import ActionLockService
from ..services.blob_store import BlobStore, get_blob_store
from ..services.booking_service import BookingService
from ..services.deposit_cleanup import cleanup_orphaned_deposit_blobs
from ..services.job_queue import JobQueue
from ..utils.dependencies import verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/cron",
    tags=["Cron"],
    dependencies=[Depends(verify_cron_secret)],
)


@router.api_route("/job-queue", methods=["GET", "POST"])
def run_job_queue(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    queue = JobQueue(db, blob_store)
    stuck_reset = queue.cleanup_stuck_jobs()
    result = queue.process_batch()
    return {"success": True, "stuck_reset": stuck_reset, **result.to_dict()}


@router.api_route("/cleanup-expired-locks", methods=["GET", "POST"])
def cleanup_expired_locks(db: Session = Depends(get_db)):
    return {"success": True, "cleaned": ActionLockService(db).cleanup_expired_locks()}


@router.api_route("/cleanup-orphaned-deposits", methods=["GET", "POST"])
def cleanup_orphaned_deposits(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    result = cleanup_orphaned_deposit_blobs(db, blob_store)
    return {"success": True, **result.to_dict()}


@router.api_route("/auto-update-bookings", methods=["GET", "POST"])
def auto_update_bookings(db: Session = Depends(get_db)):
    result = BookingService(db).auto_update_bookings()
    return {"success": True, **result.to_dict()}
