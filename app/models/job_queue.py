"""
Retry Job Model

Durable queue for best-effort side effects (orphaned blob cleanup, ...)
that could not complete inline. Rows are consumed by the scheduled worker.
"""

import uuid
import enum

from sqlalchemy import Column, String, Text, Integer, JSON, Index

from ..database import Base
from ..utils import clock


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, enum.Enum):
    CLEANUP_ORPHANED_BLOB = "cleanup-orphaned-blob"
    CLEANUP_ORPHANED_BLOBS_BATCH = "cleanup-orphaned-blobs-batch"


class RetryJob(Base):
    __tablename__ = "job_queue"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=0)  # Higher = sooner
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)

    # Epoch seconds
    scheduled_at = Column(Integer, nullable=False, default=lambda: clock.now_ts())
    next_retry_at = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False, default=lambda: clock.now_ts())
    updated_at = Column(Integer, nullable=False, default=lambda: clock.now_ts())
    completed_at = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_job_queue_status_scheduled", "status", "scheduled_at"),
        Index("ix_job_queue_priority", "priority", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error_message": self.error_message,
            "scheduled_at": self.scheduled_at,
            "next_retry_at": self.next_retry_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    def __repr__(self):
        return f"<RetryJob {self.job_type} {self.status} ({self.retry_count}/{self.max_retries})>"
