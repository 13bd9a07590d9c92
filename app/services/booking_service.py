"""
Booking Service

All booking mutations go through here. Each one:
1. validates the transition against the state machine
2. writes through the version guard (compare-and-swap on updated_at)
3. appends a status history row in the same transaction
4. commits

Conflicts are never retried here; the caller re-reads and decides.
"""

import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import Conflict, InvalidToken, InvalidTransition, NotFound, ValidationFailed
from ..models.audit_log import AdminAction, AdminActionLog
from ..models.booking import Booking, BookingStatus, BookingStatusHistory
from ..models.job_queue import JobType
from ..utils import clock
from ..utils.logging_config import get_logger
from .booking_state import USER_CANCELLABLE, coerce_status, validate_transition
from .job_queue import JobQueue
from .token_validation import revalidate_token_before_operation, validate_booking_token
from .version_guard import guarded_delete, guarded_update

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"
USER_ACTOR = "user"

USER_CANCEL = "cancel"
USER_ACCEPT_POSTPONEMENT = "accept_postponement"
USER_ACTIONS = (USER_CANCEL, USER_ACCEPT_POSTPONEMENT)


def generate_response_token() -> str:
    return secrets.token_urlsafe(32)


def _date_start_ts(value: str) -> int:
    """Epoch seconds for 00:00 UTC on an ISO date."""
    day = date.fromisoformat(value)
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())


def _today(now: int) -> str:
    return datetime.fromtimestamp(now, tz=timezone.utc).date().isoformat()


def token_expiry_for(start_date: Optional[str], now: int) -> int:
    """Tokens close when the event starts, or after the default TTL when undated."""
    ttl_expiry = now + settings.token_ttl_seconds
    if not start_date:
        return ttl_expiry
    return min(_date_start_ts(start_date), ttl_expiry)


@dataclass
class AutoUpdateResult:
    finished: int = 0
    cancelled: int = 0
    conflicts: int = 0
    updated_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finished": self.finished,
            "cancelled": self.cancelled,
            "conflicts": self.conflicts,
            "updated_ids": self.updated_ids,
        }


class BookingService:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Booking:
        """Fresh read; anything cached in the session is overwritten."""
        booking = self.db.query(Booking).populate_existing().filter(Booking.id == booking_id).first()
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found", details={"booking_id": booking_id})
        return booking

    def get_booking_by_token(self, token: str) -> Booking:
        booking = None
        if token:
            booking = self.db.query(Booking).populate_existing().filter(Booking.response_token == token).first()
        if booking is None:
            logger.warning("Token lookup failed: no booking carries this token")
            raise InvalidToken("Invalid or expired token")
        return booking

    def get_status_history(self, booking_id: str) -> List[BookingStatusHistory]:
        return self.db.query(BookingStatusHistory).filter(
            BookingStatusHistory.booking_id == booking_id
        ).order_by(BookingStatusHistory.created_at.asc()).all()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_booking(self, name: str, email: str, start_date: Optional[str] = None) -> Booking:
        now = clock.now_ts()
        if start_date:
            try:
                starts_at = _date_start_ts(start_date)
            except ValueError:
                raise ValidationFailed("start_date must be an ISO date (YYYY-MM-DD)", details={"start_date": start_date})
            if starts_at <= now:
                raise ValidationFailed("start_date must be in the future", details={"start_date": start_date})

        booking = Booking(
            name=name.strip(),
            email=email.strip().lower(),
            status=BookingStatus.PENDING.value,
            start_date=start_date,
            response_token=generate_response_token(),
            token_expires_at=token_expiry_for(start_date, now),
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        self.db.flush()
        self.db.add(BookingStatusHistory(
            booking_id=booking.id,
            old_status=None,
            new_status=BookingStatus.PENDING.value,
            changed_by=USER_ACTOR,
            change_reason="Booking submitted",
            created_at=now,
        ))
        self.db.commit()
        logger.info(f"Booking created: {booking.id}")
        return booking

    def apply_status_change(
        self,
        booking: Booking,
        new_status,
        changed_by: str,
        reason: Optional[str] = None,
        expected_updated_at: Optional[int] = None,
        values: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Guarded status write plus its history row. Does not commit.

        ``booking`` must be a fresh read; its ``updated_at`` is the expected
        version unless ``expected_updated_at`` is given.
        """
        old_status = booking.status
        new_status = coerce_status(new_status).value
        validate_transition(old_status, new_status, booking.id, booking.deposit_evidence_url)

        changes = dict(values or {})
        changes["status"] = new_status
        version = expected_updated_at if expected_updated_at is not None else booking.updated_at
        new_version = guarded_update(self.db, Booking, booking.id, version, changes)

        self.db.add(BookingStatusHistory(
            booking_id=booking.id,
            old_status=old_status,
            new_status=new_status,
            changed_by=changed_by,
            change_reason=reason,
            created_at=new_version,
        ))
        logger.booking_status_changed(booking.id, old_status, new_status, changed_by)
        return new_version

    def update_status(
        self,
        booking_id: str,
        new_status,
        expected_updated_at: int,
        admin=None,
        reason: Optional[str] = None,
        proposed_date: Optional[str] = None,
    ) -> Booking:
        """
        Admin (or system when ``admin`` is None) status change.

        Raises:
            NotFound, InvalidTransition, Conflict
        """
        booking = self.get_booking(booking_id)
        changed_by = admin.email if admin is not None else SYSTEM_ACTOR
        target = coerce_status(new_status)

        # paid_deposit is reached by uploading evidence, never by setting the status
        if target == BookingStatus.PAID_DEPOSIT and not booking.deposit_evidence_url:
            raise InvalidTransition(
                f"Cannot move to {target.value} without deposit evidence",
                details={"booking_id": booking_id, "from": booking.status, "to": target.value},
            )

        values: Dict[str, Any] = {}
        if target == BookingStatus.POSTPONED:
            if proposed_date:
                values["proposed_date"] = proposed_date
        elif target == BookingStatus.PENDING_DEPOSIT and booking.status == BookingStatus.PAID_DEPOSIT.value:
            # Deposit rejected: the evidence stays on record until a new upload replaces it
            reason = reason or "Deposit evidence rejected"

        old_status = booking.status
        try:
            self.apply_status_change(booking, target, changed_by, reason, expected_updated_at, values)
            if admin is not None:
                AdminActionLog.log(
                    self.db, admin, AdminAction.STATUS_CHANGE, "booking", booking_id,
                    description=f"{old_status} -> {target.value}",
                    details={"reason": reason, "expected_updated_at": expected_updated_at},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return self.get_booking(booking_id)

    def issue_response_token(self, booking_id: str, expected_updated_at: int, admin=None) -> Booking:
        """Replace the magic-link token (resend). The previous link stops working."""
        booking = self.get_booking(booking_id)
        now = clock.now_ts()
        try:
            guarded_update(self.db, Booking, booking_id, expected_updated_at, {
                "response_token": generate_response_token(),
                "token_expires_at": token_expiry_for(booking.start_date, now),
            })
            if admin is not None:
                AdminActionLog.log(
                    self.db, admin, AdminAction.TOKEN_RESEND, "booking", booking_id,
                    description="Response token reissued",
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Response token reissued for booking {booking_id}")
        return self.get_booking(booking_id)

    def submit_user_response(
        self,
        token: str,
        action: str,
        expected_updated_at: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Magic-link response from the guest: cancel the booking, or accept
        the date proposed in a postponement.

        Raises:
            InvalidToken, TokenExpired, InvalidTransition, ValidationFailed, Conflict
        """
        if action not in USER_ACTIONS:
            raise ValidationFailed(f"Unknown response action: {action}", details={"allowed": list(USER_ACTIONS)})

        booking = self.get_booking_by_token(token)
        validate_booking_token(booking, token)

        values: Dict[str, Any] = {}
        if action == USER_CANCEL:
            if BookingStatus(booking.status) not in USER_CANCELLABLE:
                raise InvalidTransition(
                    f"Booking can no longer be cancelled (status: {booking.status})",
                    details={"booking_id": booking.id, "from": booking.status, "to": BookingStatus.CANCELLED.value},
                )
            new_status = BookingStatus.CANCELLED
            reason = reason or "Cancelled by guest"
        else:
            if booking.status != BookingStatus.POSTPONED.value or not booking.proposed_date:
                raise InvalidTransition(
                    "There is no proposed date to accept",
                    details={"booking_id": booking.id, "from": booking.status, "to": BookingStatus.PENDING.value},
                )
            new_status = BookingStatus.PENDING
            values = {"start_date": booking.proposed_date, "proposed_date": None}
            reason = reason or f"Guest accepted new date {booking.proposed_date}"

        try:
            revalidate_token_before_operation(booking, action)
            self.apply_status_change(booking, new_status, USER_ACTOR, reason, expected_updated_at, values)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return self.get_booking(booking.id)

    def delete_booking(self, booking_id: str, expected_updated_at: int, admin) -> None:
        """
        Explicit admin delete. The deposit evidence blob is handed to the
        retry queue in the same transaction, so it is removed only if the
        row really went away.
        """
        booking = self.get_booking(booking_id)
        evidence_url = booking.deposit_evidence_url
        try:
            guarded_delete(self.db, Booking, booking_id, expected_updated_at)
            self.db.query(BookingStatusHistory).filter(
                BookingStatusHistory.booking_id == booking_id
            ).delete(synchronize_session=False)
            if evidence_url:
                JobQueue(self.db).enqueue(
                    JobType.CLEANUP_ORPHANED_BLOB,
                    {"blob_url": evidence_url, "reason": "booking deleted", "booking_id": booking_id},
                    priority=1,
                    commit=False,
                )
            AdminActionLog.log(
                self.db, admin, AdminAction.BOOKING_DELETE, "booking", booking_id,
                description=f"Deleted booking ({booking.status})",
                details={"deposit_evidence_url": evidence_url},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Booking {booking_id} deleted by {admin.email}")

    def auto_update_bookings(self, now: Optional[int] = None) -> AutoUpdateResult:
        """
        Scheduled pass over bookings whose start date has passed:
        confirmed ones are finished, undecided ones are cancelled.
        A row changed underneath is skipped and picked up next run.
        """
        now = now if now is not None else clock.now_ts()
        today = _today(now)
        result = AutoUpdateResult()

        candidates = self.db.query(Booking.id, Booking.status).filter(
            Booking.start_date.isnot(None),
            Booking.start_date < today,
            Booking.status.in_([
                BookingStatus.CONFIRMED.value,
                BookingStatus.PENDING.value,
                BookingStatus.PENDING_DEPOSIT.value,
                BookingStatus.POSTPONED.value,
            ]),
        ).all()

        for booking_id, status in candidates:
            if status == BookingStatus.CONFIRMED.value:
                target, reason = BookingStatus.FINISHED, "Event date has passed"
            else:
                target, reason = BookingStatus.CANCELLED, "Automatically cancelled: event date passed without confirmation"

            try:
                booking = self.get_booking(booking_id)
                self.apply_status_change(booking, target, SYSTEM_ACTOR, reason)
                self.db.commit()
            except (Conflict, InvalidTransition, NotFound) as e:
                self.db.rollback()
                result.conflicts += 1
                logger.warning(f"Auto-update skipped booking {booking_id}: {e}")
                continue

            result.updated_ids.append(booking_id)
            if target == BookingStatus.FINISHED:
                result.finished += 1
            else:
                result.cancelled += 1

        if result.updated_ids or result.conflicts:
            logger.info(
                f"Booking auto-update: {result.finished} finished, "
                f"{result.cancelled} cancelled, {result.conflicts} skipped"
            )
        return result
