"""
Durable Retry Queue

Side effects that could not finish inline (deleting an orphaned blob, ...)
are written to ``job_queue`` and drained by a scheduled worker.

Processing rules:
- pending jobs that are due, highest priority first, then oldest
- each job is claimed with ``UPDATE ... WHERE status = 'pending'`` so two
  overlapping workers never run the same row at the same time
- a failure bumps ``retry_count`` and reschedules with backoff; once
  ``retry_count`` exceeds ``max_retries`` the job is marked failed
- rows stuck in ``processing`` (worker died mid-job) are reset to pending
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import NotFound, StorageFault, ValidationFailed
from ..models.job_queue import JobStatus, JobType, RetryJob
from ..utils import clock
from ..utils.db_helpers import compare_and_swap, get_pending_with_skip_locked
from .blob_store import BlobStore, get_blob_store
from .job_handlers import JobContext, get_handler, parse_payload

logger = logging.getLogger(__name__)

# Seconds to wait before retry #1, #2, ...; the last value repeats
RETRY_DELAYS = [60, 5 * 60, 15 * 60, 30 * 60, 60 * 60]

MAX_ERROR_LENGTH = 2000


def retry_delay_seconds(retry_count: int) -> int:
    """Backoff for a job that has already failed ``retry_count`` times."""
    return RETRY_DELAYS[min(retry_count, len(RETRY_DELAYS) - 1)]


@dataclass
class JobBatchResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "errors": self.errors,
        }


class JobQueue:
    def __init__(self, db: Session, blob_store: Optional[BlobStore] = None):
        self.db = db
        self._blob_store = blob_store

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = get_blob_store()
        return self._blob_store

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type,
        payload,
        priority: int = 0,
        max_retries: Optional[int] = None,
        scheduled_at: Optional[int] = None,
        commit: bool = True,
    ) -> RetryJob:
        """
        Validate ``payload`` against the handler's schema and persist the job.

        With ``commit=False`` the job is only added to the session so it lands
        in the caller's transaction.

        Raises:
            ValidationFailed: unknown job type or payload that does not fit its schema.
            StorageFault: the row could not be written.
        """
        model = parse_payload(job_type, payload)
        handler = get_handler(job_type)
        now = clock.now_ts()

        job = RetryJob(
            job_type=handler.job_type.value,
            payload=model.model_dump(mode="json"),
            priority=priority,
            status=JobStatus.PENDING.value,
            retry_count=0,
            max_retries=max_retries if max_retries is not None else settings.job_default_max_retries,
            scheduled_at=scheduled_at if scheduled_at is not None else now,
            created_at=now,
            updated_at=now,
        )
        if not commit:
            self.db.add(job)
            return job

        try:
            self.db.add(job)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to enqueue {handler.job_type.value} job: {e}")
            raise StorageFault("Failed to enqueue job", details={"job_type": handler.job_type.value}) from e

        logger.info(f"Job enqueued: {job.job_type} {job.id} (priority {job.priority})")
        return job

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def get_pending_jobs(self, limit: Optional[int] = None) -> List[RetryJob]:
        now = clock.now_ts()
        return get_pending_with_skip_locked(
            self.db,
            RetryJob,
            (RetryJob.status == JobStatus.PENDING.value)
            & (RetryJob.scheduled_at <= now)
            & or_(RetryJob.next_retry_at.is_(None), RetryJob.next_retry_at <= now),
            order_by=[RetryJob.priority.desc(), RetryJob.created_at.asc()],
            limit=limit or settings.job_queue_batch_size,
        )

    def claim(self, job: RetryJob) -> bool:
        """Atomically move ``job`` from pending to processing. False if someone else did."""
        claimed = compare_and_swap(
            self.db,
            RetryJob,
            [RetryJob.id == job.id, RetryJob.status == JobStatus.PENDING.value],
            {"status": JobStatus.PROCESSING.value, "updated_at": clock.now_ts()},
        )
        self.db.commit()
        if claimed:
            self.db.refresh(job)
        return bool(claimed)

    def process_batch(self, limit: Optional[int] = None) -> JobBatchResult:
        result = JobBatchResult()
        jobs = self.get_pending_jobs(limit)
        if not jobs:
            return result

        logger.info(f"Processing {len(jobs)} queued job(s)")
        ctx = JobContext(db=self.db, blob_store=self.blob_store)

        for job in jobs:
            if not self.claim(job):
                logger.debug(f"Job {job.id} already claimed by another worker")
                continue

            result.processed += 1
            try:
                handler = get_handler(job.job_type)
                handler.run(parse_payload(job.job_type, job.payload), ctx)
            except Exception as e:
                self.db.rollback()
                self._mark_failed(job, str(e) or e.__class__.__name__)
                result.failed += 1
                result.errors.append(f"{job.id}: {e}")
                continue

            self._mark_completed(job)
            result.completed += 1

        logger.info(
            f"Job batch done: {result.processed} processed, "
            f"{result.completed} completed, {result.failed} failed"
        )
        return result

    def _mark_completed(self, job: RetryJob) -> None:
        now = clock.now_ts()
        job.status = JobStatus.COMPLETED.value
        job.completed_at = now
        job.updated_at = now
        job.error_message = None
        self.db.commit()
        logger.info(f"Job completed: {job.job_type} {job.id}")

    def _mark_failed(self, job: RetryJob, error_message: str) -> None:
        now = clock.now_ts()
        attempts = job.retry_count + 1
        job.retry_count = attempts
        job.error_message = error_message[:MAX_ERROR_LENGTH]
        job.updated_at = now

        if attempts > job.max_retries:
            job.status = JobStatus.FAILED.value
            job.next_retry_at = None
            logger.error(f"Job {job.job_type} {job.id} failed permanently after {attempts} attempt(s): {error_message}")
        else:
            retry_at = now + retry_delay_seconds(attempts - 1)
            job.status = JobStatus.PENDING.value
            job.next_retry_at = retry_at
            job.scheduled_at = retry_at
            logger.warning(f"Job {job.job_type} {job.id} failed (attempt {attempts}), retrying at {retry_at}: {error_message}")
        self.db.commit()

    def cleanup_stuck_jobs(self, threshold_seconds: Optional[int] = None) -> int:
        """Reset jobs left in processing longer than the threshold."""
        now = clock.now_ts()
        cutoff = now - (threshold_seconds or settings.job_stuck_threshold_seconds)
        reset = compare_and_swap(
            self.db,
            RetryJob,
            [RetryJob.status == JobStatus.PROCESSING.value, RetryJob.updated_at < cutoff],
            {"status": JobStatus.PENDING.value, "updated_at": now},
        )
        self.db.commit()
        if reset:
            logger.warning(f"Reset {reset} stuck job(s) to pending")
        return reset

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[RetryJob]:
        return self.db.query(RetryJob).filter(RetryJob.id == job_id).first()

    def list_jobs(self, status: Optional[str] = None, job_type: Optional[str] = None, limit: int = 100) -> List[RetryJob]:
        query = self.db.query(RetryJob)
        if status:
            query = query.filter(RetryJob.status == status)
        if job_type:
            query = query.filter(RetryJob.job_type == job_type)
        return query.order_by(RetryJob.created_at.desc()).limit(limit).all()

    def cancel_job(self, job_id: str) -> bool:
        """Drop a job that has not started yet."""
        cancelled = self.db.query(RetryJob).filter(
            RetryJob.id == job_id,
            RetryJob.status == JobStatus.PENDING.value,
        ).delete(synchronize_session=False)
        self.db.commit()
        if cancelled:
            logger.info(f"Job cancelled: {job_id}")
        return bool(cancelled)

    def retry_failed_job(self, job_id: str) -> RetryJob:
        """
        Put a permanently failed job back in the queue with a fresh retry budget.

        Raises:
            NotFound: no such job.
            ValidationFailed: the job is not in the failed state.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found", details={"job_id": job_id})
        if job.status != JobStatus.FAILED.value:
            raise ValidationFailed(
                f"Only failed jobs can be retried (job is {job.status})",
                details={"job_id": job_id, "status": job.status},
            )

        now = clock.now_ts()
        job.status = JobStatus.PENDING.value
        job.retry_count = 0
        job.error_message = None
        job.scheduled_at = now
        job.next_retry_at = None
        job.updated_at = now
        self.db.commit()
        logger.info(f"Job {job_id} re-queued by admin")
        return job


def enqueue_blob_cleanup(db: Session, blob_url: str, reason: str, booking_id: Optional[str] = None) -> RetryJob:
    """Queue deletion of one orphaned blob."""
    return JobQueue(db).enqueue(
        JobType.CLEANUP_ORPHANED_BLOB,
        {"blob_url": blob_url, "reason": reason, "booking_id": booking_id},
        priority=1,
    )
