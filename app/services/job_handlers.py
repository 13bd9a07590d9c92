"""
Retry job handlers.

Each job type owns a pydantic payload model; ``parse_payload`` turns the
stored JSON back into that model before the handler runs. Handlers must be
safe to run more than once for the same payload.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from ..exceptions import StorageFault, ValidationFailed
from ..models.booking import Booking
from ..models.job_queue import JobType
from .blob_store import BlobStore

logger = logging.getLogger(__name__)


class CleanupOrphanedBlobPayload(BaseModel):
    blob_url: str = Field(min_length=1)
    reason: Optional[str] = None
    booking_id: Optional[str] = None


class CleanupOrphanedBlobsBatchPayload(BaseModel):
    blob_urls: List[str] = Field(min_length=1)
    reason: Optional[str] = None


@dataclass
class JobContext:
    db: Session
    blob_store: BlobStore


@dataclass(frozen=True)
class JobHandler:
    job_type: JobType
    payload_model: Type[BaseModel]
    run: Callable[[BaseModel, JobContext], None]


def _is_referenced(db: Session, blob_url: str) -> bool:
    return db.query(Booking.id).filter(Booking.deposit_evidence_url == blob_url).first() is not None


def cleanup_orphaned_blob(payload: CleanupOrphanedBlobPayload, ctx: JobContext) -> None:
    # A retry may run after the url was committed after all; never delete a live reference
    if _is_referenced(ctx.db, payload.blob_url):
        logger.info(f"Skipping cleanup of {payload.blob_url}: still referenced by a booking")
        return
    ctx.blob_store.delete(payload.blob_url)
    logger.info(f"Orphaned blob cleaned up: {payload.blob_url}")


def cleanup_orphaned_blobs_batch(payload: CleanupOrphanedBlobsBatchPayload, ctx: JobContext) -> None:
    failed = []
    for blob_url in payload.blob_urls:
        if _is_referenced(ctx.db, blob_url):
            continue
        try:
            ctx.blob_store.delete(blob_url)
        except StorageFault as e:
            logger.warning(f"Batch cleanup could not delete {blob_url}: {e}")
            failed.append(blob_url)

    if failed:
        # The whole batch is retried; already-deleted blobs are no-ops
        raise StorageFault(
            f"Failed to delete {len(failed)} of {len(payload.blob_urls)} blobs",
            details={"failed": failed},
        )
    logger.info(f"Orphaned blob batch cleaned up: {len(payload.blob_urls)} blob(s)")


JOB_HANDLERS: Dict[str, JobHandler] = {
    JobType.CLEANUP_ORPHANED_BLOB.value: JobHandler(
        JobType.CLEANUP_ORPHANED_BLOB, CleanupOrphanedBlobPayload, cleanup_orphaned_blob
    ),
    JobType.CLEANUP_ORPHANED_BLOBS_BATCH.value: JobHandler(
        JobType.CLEANUP_ORPHANED_BLOBS_BATCH, CleanupOrphanedBlobsBatchPayload, cleanup_orphaned_blobs_batch
    ),
}


def get_handler(job_type) -> JobHandler:
    key = getattr(job_type, "value", job_type)
    handler = JOB_HANDLERS.get(key)
    if handler is None:
        raise ValidationFailed(f"No handler registered for job type {key!r}", details={"job_type": key})
    return handler


def parse_payload(job_type, payload) -> BaseModel:
    """Validate a raw payload against the schema owned by ``job_type``'s handler."""
    handler = get_handler(job_type)
    if isinstance(payload, handler.payload_model):
        return payload
    try:
        return handler.payload_model.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailed(
            f"Invalid payload for job type {handler.job_type.value}",
            details={
                "job_type": handler.job_type.value,
                "errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            },
        ) from e
