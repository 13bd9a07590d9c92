"""
Deposit evidence uploads.

Two entry points share one write path:

- guests upload through their magic link (token checked on arrival with
  the short grace period, and again right before the write with the
  extended one, because the upload in between can be slow)
- admins upload on a guest's behalf while holding the booking's
  ``deposit-upload`` action lock

Both run as an OrphanSafeWrite so a failed write never leaves the blob
behind, and both discard the previous evidence blob once the new URL is
committed.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from ..exceptions import Conflict, ValidationFailed
from ..models.action_lock import ResourceType
from ..models.audit_log import AdminAction, AdminActionLog
from ..models.booking import Booking, BookingStatus
from .blob_store import BlobStore
from .booking_service import USER_ACTOR, BookingService
from .booking_state import validate_deposit_upload
from .lock_extension import ExtendFn, hold_action_lock
from .token_validation import (
    check_token_matches,
    revalidate_token_before_operation,
    validate_booking_token,
)
from .two_phase_write import OrphanSafeWrite, SessionFactory

logger = logging.getLogger(__name__)

DEPOSIT_PREFIX = "deposit-"
DEPOSIT_LOCK_ACTION = "deposit-upload"
MAX_DEPOSIT_BYTES = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
}


def validate_deposit_file(data: bytes, content_type: Optional[str]) -> str:
    """Returns the file extension to store the blob under."""
    if not data:
        raise ValidationFailed("Deposit evidence file is required")
    if len(data) > MAX_DEPOSIT_BYTES:
        raise ValidationFailed(
            f"File is too large (max {MAX_DEPOSIT_BYTES // (1024 * 1024)}MB)",
            details={"size": len(data), "max_size": MAX_DEPOSIT_BYTES},
        )
    extension = ALLOWED_CONTENT_TYPES.get((content_type or "").lower())
    if extension is None:
        raise ValidationFailed(
            "Deposit evidence must be a JPEG, PNG, WEBP or HEIC image",
            details={"content_type": content_type, "allowed": sorted(ALLOWED_CONTENT_TYPES)},
        )
    return extension


def deposit_pathname(booking_id: str, extension: str) -> str:
    return f"{DEPOSIT_PREFIX}{booking_id}-{uuid.uuid4().hex[:12]}{extension}"


class DepositService:
    def __init__(self, db: Session, blob_store: BlobStore, session_factory: Optional[SessionFactory] = None):
        self.db = db
        self.blob_store = blob_store
        self.bookings = BookingService(db)
        self.writer = OrphanSafeWrite(db, blob_store, session_factory)

    def upload_user_deposit(self, token: str, data: bytes, content_type: Optional[str]) -> Booking:
        """
        Raises:
            ValidationFailed, InvalidToken, TokenExpired, InvalidTransition, Conflict
        """
        extension = validate_deposit_file(data, content_type)
        booking = self.bookings.get_booking_by_token(token)
        validate_booking_token(booking, token)
        validate_deposit_upload(booking.status, booking.deposit_evidence_url, booking.id)
        booking_id = booking.id

        def commit(url: str) -> Optional[str]:
            fresh = self.bookings.get_booking(booking_id)
            check_token_matches(fresh, token)
            validate_deposit_upload(fresh.status, fresh.deposit_evidence_url, booking_id)
            previous_url = fresh.deposit_evidence_url
            revalidate_token_before_operation(fresh, "deposit_upload", use_extended_grace_period=True)
            self.bookings.apply_status_change(
                fresh,
                BookingStatus.PAID_DEPOSIT,
                USER_ACTOR,
                "Deposit evidence uploaded by guest",
                values={"deposit_evidence_url": url},
            )
            self.db.commit()
            return previous_url

        previous_url = self.writer.execute(
            lambda: self.blob_store.put(data, deposit_pathname(booking_id, extension), content_type),
            commit,
            booking_id,
        )
        return self._finish(booking_id, previous_url)

    def upload_admin_deposit(
        self,
        booking_id: str,
        admin,
        data: bytes,
        content_type: Optional[str],
        expected_updated_at: Optional[int] = None,
        extend_fn: Optional[ExtendFn] = None,
    ) -> Booking:
        """
        Raises:
            LockContention, ValidationFailed, NotFound, InvalidTransition, Conflict
        """
        extension = validate_deposit_file(data, content_type)

        with hold_action_lock(
            self.db, ResourceType.BOOKING, booking_id, DEPOSIT_LOCK_ACTION,
            admin.email, admin.name, extend_fn,
        ) as held:
            booking = self.bookings.get_booking(booking_id)
            version = expected_updated_at if expected_updated_at is not None else booking.updated_at
            if booking.updated_at != version:
                # No point uploading against a version that is already gone
                raise Conflict(
                    "Booking was modified by another process. Please refresh and try again.",
                    details={"id": booking_id, "expected_updated_at": version, "current_updated_at": booking.updated_at},
                )
            validate_deposit_upload(booking.status, booking.deposit_evidence_url, booking_id)

            def commit(url: str) -> Optional[str]:
                held.ensure_held()
                fresh = self.bookings.get_booking(booking_id)
                validate_deposit_upload(fresh.status, fresh.deposit_evidence_url, booking_id)
                previous_url = fresh.deposit_evidence_url
                self.bookings.apply_status_change(
                    fresh,
                    BookingStatus.PAID_DEPOSIT,
                    admin.email,
                    "Deposit evidence uploaded by admin",
                    expected_updated_at=version,
                    values={"deposit_evidence_url": url},
                )
                AdminActionLog.log(
                    self.db, admin, AdminAction.DEPOSIT_UPLOAD, "booking", booking_id,
                    description="Deposit evidence uploaded",
                    details={"deposit_evidence_url": url, "replaced": previous_url},
                )
                self.db.commit()
                return previous_url

            previous_url = self.writer.execute(
                lambda: self.blob_store.put(data, deposit_pathname(booking_id, extension), content_type),
                commit,
                booking_id,
            )

        return self._finish(booking_id, previous_url)

    def _finish(self, booking_id: str, previous_url: Optional[str]) -> Booking:
        booking = self.bookings.get_booking(booking_id)
        if previous_url and previous_url != booking.deposit_evidence_url:
            self.writer.discard_replaced_blob(previous_url, booking_id)
        logger.info(f"Deposit evidence stored for booking {booking_id}")
        return booking
