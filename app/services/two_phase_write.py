"""
Orphan-Safe Two-Phase Write

"Store a blob, then record its URL" as one unit:

    1. upload the blob
    2. commit(url): re-fetch the row, re-check token / lock / status,
       guarded update, commit

If step 2 raises for any reason the blob has no owner. It is deleted
inline; when that fails a cleanup job is written to the retry queue in a
session of its own (the request session may be mid-rollback); when even
that fails the orphan is logged at error level. The error from step 2 is
always the one the caller sees.
"""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from ..utils.logging_config import get_logger
from .blob_store import BlobStore
from .job_queue import enqueue_blob_cleanup

logger = get_logger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], Session]


class OrphanSafeWrite:
    def __init__(
        self,
        db: Session,
        blob_store: BlobStore,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.db = db
        self.blob_store = blob_store
        self.session_factory = session_factory or sessionmaker(bind=db.get_bind(), autoflush=False)

    def execute(
        self,
        upload: Callable[[], str],
        commit: Callable[[str], T],
        booking_id: Optional[str] = None,
    ) -> T:
        """
        Run ``upload`` then ``commit(url)``.

        Errors from ``upload`` propagate as-is (nothing to clean up). Errors
        from ``commit`` trigger orphan cleanup and are then re-raised.
        """
        url = upload()
        try:
            return commit(url)
        except Exception as e:
            self.db.rollback()
            self.cleanup_orphaned_blob(url, f"{e.__class__.__name__}: {e}", booking_id)
            raise

    def cleanup_orphaned_blob(self, url: str, reason: str, booking_id: Optional[str] = None) -> str:
        """
        Delete ``url`` or make sure a job will.

        Never raises. Returns the outcome: ``deleted``, ``queued`` or ``lost``.
        """
        try:
            self.blob_store.delete(url)
            logger.orphan_cleanup("deleted", url, reason)
            return "deleted"
        except Exception as delete_error:
            logger.orphan_cleanup("delete_failed", url, f"{reason}; delete error: {delete_error}", level=logging.WARNING)

        try:
            queue_db = self.session_factory()
            try:
                job = enqueue_blob_cleanup(queue_db, url, reason, booking_id)
                job_id = job.id
            finally:
                queue_db.close()
        except Exception as queue_error:
            logger.orphan_cleanup("lost", url, f"{reason}; queue error: {queue_error}", level=logging.ERROR)
            return "lost"

        logger.orphan_cleanup("queued", url, f"{reason}; job {job_id}")
        return "queued"

    def discard_replaced_blob(self, url: Optional[str], booking_id: Optional[str] = None) -> Optional[str]:
        """Remove the previous blob once the new reference is committed."""
        if not url:
            return None
        return self.cleanup_orphaned_blob(url, "replaced by a newer upload", booking_id)
