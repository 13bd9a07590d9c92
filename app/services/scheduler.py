"""
Scheduled workers

In-process APScheduler jobs, started from the FastAPI lifespan:
- expired action lock sweep           (LOCK_CLEANUP_INTERVAL_SECONDS)
- retry queue drain + stuck job reset (JOB_QUEUE_INTERVAL_SECONDS)
- booking auto-update                 (AUTO_UPDATE_INTERVAL_SECONDS)
- orphaned deposit sweep              (daily, 03:00 UTC)

Each run opens its own session and executes in a worker thread so blob
and database calls never block the event loop. The same ``run_*``
functions back the cron endpoints and ``worker.py``.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..database import SessionLocal
from .action_lock_service import ActionLockService
from .blob_store import get_blob_store
from .booking_service import BookingService
from .deposit_cleanup import cleanup_orphaned_deposit_blobs
from .job_queue import JobQueue

logger = logging.getLogger(__name__)

SCHEDULER_TIMEZONE = "UTC"

_scheduler: Optional[AsyncIOScheduler] = None
_last_runs: Dict[str, Dict[str, Any]] = {}


def run_lock_sweep() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        return {"cleaned": ActionLockService(db).cleanup_expired_locks()}
    finally:
        db.close()


def run_job_queue() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        queue = JobQueue(db)
        reset = queue.cleanup_stuck_jobs()
        result = queue.process_batch()
        return {"stuck_reset": reset, **result.to_dict()}
    finally:
        db.close()


def run_booking_auto_update() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        return BookingService(db).auto_update_bookings().to_dict()
    finally:
        db.close()


def run_deposit_sweep() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        return cleanup_orphaned_deposit_blobs(db, get_blob_store()).to_dict()
    finally:
        db.close()


SCHEDULED_JOBS: Dict[str, Callable[[], Dict[str, Any]]] = {
    "lock_sweep": run_lock_sweep,
    "job_queue": run_job_queue,
    "booking_auto_update": run_booking_auto_update,
    "deposit_sweep": run_deposit_sweep,
}


async def _run_scheduled(name: str) -> None:
    """Scheduler entry point; a failing run is logged and retried next tick."""
    try:
        result = await asyncio.to_thread(SCHEDULED_JOBS[name])
    except Exception as e:
        logger.error(f"Scheduled job {name} failed: {e}", exc_info=True)
        _last_runs[name] = {"at": datetime.now(timezone.utc).isoformat(), "ok": False, "error": str(e)}
        return
    _last_runs[name] = {"at": datetime.now(timezone.utc).isoformat(), "ok": True, "result": result}
    logger.debug(f"Scheduled job {name}: {result}")


def start_scheduler() -> bool:
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler is already running")
        return True

    try:
        _scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
        _scheduler.add_job(
            _run_scheduled, IntervalTrigger(seconds=settings.lock_cleanup_interval_seconds),
            args=["lock_sweep"], id="lock_sweep", name="Expired action lock sweep",
            replace_existing=True, max_instances=1, coalesce=True,
        )
        _scheduler.add_job(
            _run_scheduled, IntervalTrigger(seconds=settings.job_queue_interval_seconds),
            args=["job_queue"], id="job_queue", name="Retry queue drain",
            replace_existing=True, max_instances=1, coalesce=True,
        )
        _scheduler.add_job(
            _run_scheduled, IntervalTrigger(seconds=settings.auto_update_interval_seconds),
            args=["booking_auto_update"], id="booking_auto_update", name="Booking auto-update",
            replace_existing=True, max_instances=1, coalesce=True,
        )
        _scheduler.add_job(
            _run_scheduled, CronTrigger(hour=3, minute=0, timezone=SCHEDULER_TIMEZONE),
            args=["deposit_sweep"], id="deposit_sweep", name="Orphaned deposit sweep",
            replace_existing=True, max_instances=1, coalesce=True,
        )
        _scheduler.start()
        logger.info(f"Scheduler started with {len(_scheduler.get_jobs())} jobs")
        return True
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")
        _scheduler = None
        return False


def stop_scheduler() -> None:
    global _scheduler

    if _scheduler is None:
        return
    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Scheduler stopped")


def get_scheduler_status() -> Dict[str, Any]:
    status: Dict[str, Any] = {"running": False, "timezone": SCHEDULER_TIMEZONE, "jobs": [], "last_runs": dict(_last_runs)}
    if _scheduler is not None and _scheduler.running:
        status["running"] = True
        for job in _scheduler.get_jobs():
            status["jobs"].append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            })
    return status
