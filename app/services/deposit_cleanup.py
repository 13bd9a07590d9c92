"""
Orphaned deposit sweep.

Catches deposit blobs that slipped past the inline cleanup (process killed
between upload and commit, ...): everything under the ``deposit-`` prefix
that no booking references any more is deleted. Blobs that cannot be
deleted now go to the retry queue.
"""

import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from ..models.booking import Booking
from ..models.job_queue import JobType
from ..utils import clock
from .blob_store import BlobInfo, BlobStore
from .deposit_service import DEPOSIT_PREFIX
from .job_queue import JobQueue

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000
DELETE_BATCH_SIZE = 10

# Uploads younger than this may still be waiting for their commit
MIN_BLOB_AGE_SECONDS = 60 * 60


@dataclass
class CleanupResult:
    checked: int = 0
    orphaned: int = 0
    deleted: int = 0
    queued: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "orphaned": self.orphaned,
            "deleted": self.deleted,
            "queued": self.queued,
            "errors": self.errors,
        }


def _referenced_urls(db: Session) -> Set[str]:
    rows = db.query(Booking.deposit_evidence_url).filter(Booking.deposit_evidence_url.isnot(None)).all()
    return {row[0] for row in rows}


def _uploaded_ts(blob: BlobInfo) -> Optional[int]:
    if not blob.uploaded_at:
        return None
    try:
        return int(datetime.fromisoformat(blob.uploaded_at.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return None


def _list_deposit_blobs(blob_store: BlobStore) -> List[BlobInfo]:
    blobs: List[BlobInfo] = []
    cursor: Optional[str] = None
    while True:
        page = blob_store.list(prefix=DEPOSIT_PREFIX, limit=LIST_PAGE_SIZE, cursor=cursor)
        blobs.extend(page.blobs)
        if not page.has_more or not page.cursor:
            return blobs
        cursor = page.cursor


def cleanup_orphaned_deposit_blobs(db: Session, blob_store: BlobStore) -> CleanupResult:
    result = CleanupResult()

    referenced = _referenced_urls(db)
    blobs = _list_deposit_blobs(blob_store)
    result.checked = len(blobs)

    cutoff = clock.now_ts() - MIN_BLOB_AGE_SECONDS
    orphaned = [
        blob.url for blob in blobs
        if blob.url not in referenced and (_uploaded_ts(blob) is None or _uploaded_ts(blob) <= cutoff)
    ]
    result.orphaned = len(orphaned)
    if not orphaned:
        logger.info(f"Deposit sweep: {result.checked} blob(s) checked, none orphaned")
        return result

    failed: List[str] = []
    for start in range(0, len(orphaned), DELETE_BATCH_SIZE):
        for url in orphaned[start:start + DELETE_BATCH_SIZE]:
            # Re-check: an upload may have committed while we were listing
            if db.query(Booking.id).filter(Booking.deposit_evidence_url == url).first() is not None:
                continue
            try:
                blob_store.delete(url)
                result.deleted += 1
            except Exception as e:
                logger.warning(f"Deposit sweep could not delete {url}: {e}")
                result.errors.append(f"{url}: {e}")
                failed.append(url)

    if failed:
        JobQueue(db, blob_store).enqueue(
            JobType.CLEANUP_ORPHANED_BLOBS_BATCH,
            {"blob_urls": failed, "reason": "deposit sweep"},
            priority=1,
        )
        result.queued = len(failed)

    logger.info(
        f"Deposit sweep: {result.checked} checked, {result.orphaned} orphaned, "
        f"{result.deleted} deleted, {result.queued} queued"
    )
    return result
