"""
Resource Action Lock Manager

Lease-based mutual exclusion keyed by (resource_type, resource_id, action).
One admin identity holds a lease at a time; leases expire on their own if
not extended, and expired rows are reclaimed lazily on acquire and by the
periodic sweep.

All coordination happens in the database:
- the unique constraint on the tuple decides which insert wins
- extends are compare-and-swap updates guarded by ``expires_at > now``

Contention is an expected outcome (``None`` / ``False``); only unexpected
storage errors are raised, as StorageFault.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import StorageFault
from ..models.action_lock import ActionLock, LockEventType, ResourceType
from ..utils import clock
from ..utils.db_helpers import compare_and_swap, insert_on_conflict_do_nothing
from ..utils.logging_config import get_logger
from .lock_events import LockEvent, LockEventBroadcaster, get_lock_broadcaster

logger = get_logger(__name__)

LOCK_TUPLE = ["resource_type", "resource_id", "action"]


class AcquirePhase(str, enum.Enum):
    IDLE = "idle"
    EXTENDING = "extending"
    INSERTING = "inserting"
    VERIFYING = "verifying"
    DONE = "done"


@dataclass
class LockStatus:
    locked: bool
    lock_id: Optional[str] = None
    locked_by: Optional[str] = None
    locked_by_name: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "locked": self.locked,
            "lock_id": self.lock_id,
            "locked_by": self.locked_by,
            "locked_by_name": self.locked_by_name,
            "expires_at": self.expires_at,
        }


@dataclass
class _AcquireState:
    """Scratch state carried between acquire phases."""
    now: int
    expires_at: int
    phase: AcquirePhase = AcquirePhase.IDLE
    existing_id: Optional[str] = None
    candidate_id: Optional[str] = None
    result: Optional[str] = None
    event: Optional[LockEventType] = None


def _resource_value(resource_type) -> str:
    return ResourceType(resource_type).value


class ActionLockService:
    """
    Acquire / extend / release action locks.

    Each public call runs in its own transaction on ``db`` and commits
    before publishing a lock event.
    """

    def __init__(
        self,
        db: Session,
        broadcaster: Optional[LockEventBroadcaster] = None,
        lock_duration: Optional[int] = None,
    ):
        self.db = db
        self.broadcaster = broadcaster or get_lock_broadcaster()
        self.lock_duration = lock_duration or settings.lock_duration_seconds

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    def acquire(
        self,
        resource_type,
        resource_id: str,
        action: str,
        admin_email: str,
        admin_name: Optional[str] = None,
    ) -> Optional[str]:
        """
        Try to take the lease on (resource_type, resource_id, action).

        Returns the lock id, or None when another admin holds it. Calling
        again while holding the lease extends it and returns the same id.
        """
        resource_type = _resource_value(resource_type)
        now = clock.now_ts()
        state = _AcquireState(now=now, expires_at=now + self.lock_duration)
        expired: List[LockEvent] = []

        try:
            while state.phase != AcquirePhase.DONE:
                if state.phase == AcquirePhase.IDLE:
                    expired = self._reclaim_expired(resource_type, resource_id, action, now)
                    self._step_idle(state, resource_type, resource_id, action, admin_email)
                elif state.phase == AcquirePhase.EXTENDING:
                    self._step_extending(state, admin_email)
                elif state.phase == AcquirePhase.INSERTING:
                    self._step_inserting(state, resource_type, resource_id, action, admin_email, admin_name)
                elif state.phase == AcquirePhase.VERIFYING:
                    self._step_verifying(state, resource_type, resource_id, action, admin_email)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Storage error acquiring lock {resource_type}:{resource_id}:{action}: {e}")
            raise StorageFault(
                "Failed to acquire action lock",
                details={"resource_type": resource_type, "resource_id": resource_id, "action": action},
            ) from e

        for event in expired:
            self._publish(event)

        if state.result is None:
            logger.info(
                f"Lock contention on {resource_type}:{resource_id}:{action} for {admin_email}"
            )
            return None

        lock = self.db.get(ActionLock, state.result, populate_existing=True)
        if lock is not None:
            self._publish(LockEvent.from_lock(state.event, lock))
        logger.lock_event(state.event.value, state.result, f"{resource_type}:{resource_id}:{action}", admin_email)
        return state.result

    def _step_idle(self, state: _AcquireState, resource_type, resource_id, action, admin_email) -> None:
        live = self._find_live_lock(resource_type, resource_id, action, state.now)
        if live is None:
            state.phase = AcquirePhase.INSERTING
        elif live.admin_email != admin_email:
            state.phase = AcquirePhase.DONE
        else:
            state.existing_id = live.id
            state.phase = AcquirePhase.EXTENDING

    def _step_extending(self, state: _AcquireState, admin_email: str) -> None:
        affected = compare_and_swap(
            self.db,
            ActionLock,
            [
                ActionLock.id == state.existing_id,
                ActionLock.admin_email == admin_email,
                ActionLock.expires_at > state.now,
            ],
            {"expires_at": state.expires_at},
        )
        if affected:
            state.result = state.existing_id
            state.event = LockEventType.EXTENDED
            state.phase = AcquirePhase.DONE
            return

        # Expired between the read and the update: drop it and start fresh
        self.db.query(ActionLock).filter(
            ActionLock.id == state.existing_id,
            ActionLock.expires_at <= state.now,
        ).delete(synchronize_session=False)
        state.phase = AcquirePhase.INSERTING

    def _step_inserting(self, state: _AcquireState, resource_type, resource_id, action, admin_email, admin_name) -> None:
        state.candidate_id = str(uuid.uuid4())
        insert_on_conflict_do_nothing(
            self.db,
            ActionLock,
            {
                "id": state.candidate_id,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "action": action,
                "admin_email": admin_email,
                "admin_name": admin_name,
                "locked_at": state.now,
                "expires_at": state.expires_at,
            },
            LOCK_TUPLE,
        )
        state.phase = AcquirePhase.VERIFYING

    def _step_verifying(self, state: _AcquireState, resource_type, resource_id, action, admin_email) -> None:
        landed = self._find_live_lock(resource_type, resource_id, action, state.now)
        if landed is not None and landed.id == state.candidate_id and landed.admin_email == admin_email:
            state.result = landed.id
            state.event = LockEventType.ACQUIRED
        state.phase = AcquirePhase.DONE

    # ------------------------------------------------------------------
    # Release / extend
    # ------------------------------------------------------------------

    def release(self, lock_id: str, admin_email: str) -> bool:
        """Delete the lock if ``admin_email`` holds it. No-op otherwise."""
        holder_filter = [ActionLock.id == lock_id, ActionLock.admin_email == admin_email]
        try:
            lock = self.db.query(ActionLock).filter(*holder_filter).first()
            event = LockEvent.from_lock(LockEventType.RELEASED, lock) if lock is not None else None
            deleted = self.db.query(ActionLock).filter(*holder_filter).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Storage error releasing lock {lock_id}: {e}")
            raise StorageFault("Failed to release action lock", details={"lock_id": lock_id}) from e

        if deleted and event is not None:
            self._publish(event)
            logger.lock_event(event.type, lock_id, f"{event.resource_type}:{event.resource_id}:{event.action}", admin_email)
        return bool(deleted)

    def extend(self, lock_id: str, admin_email: str) -> bool:
        """
        Push the lease forward. False means the lease is gone (expired,
        released or never held) and the caller is no longer the holder.
        """
        now = clock.now_ts()
        try:
            affected = compare_and_swap(
                self.db,
                ActionLock,
                [
                    ActionLock.id == lock_id,
                    ActionLock.admin_email == admin_email,
                    ActionLock.expires_at > now,
                ],
                {"expires_at": now + self.lock_duration},
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Storage error extending lock {lock_id}: {e}")
            raise StorageFault("Failed to extend action lock", details={"lock_id": lock_id}) from e

        if not affected:
            logger.warning(f"Lock {lock_id} could not be extended by {admin_email}: lease lost")
            return False

        lock = self.db.get(ActionLock, lock_id, populate_existing=True)
        if lock is not None:
            self._publish(LockEvent.from_lock(LockEventType.EXTENDED, lock))
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_locked(self, resource_type, resource_id: str, action: str) -> LockStatus:
        lock = self._find_live_lock(_resource_value(resource_type), resource_id, action, clock.now_ts())
        if lock is None:
            return LockStatus(locked=False)
        return LockStatus(
            locked=True,
            lock_id=lock.id,
            locked_by=lock.admin_email,
            locked_by_name=lock.admin_name,
            expires_at=lock.expires_at,
        )

    def is_held(self, lock_id: str, admin_email: str) -> bool:
        """True while ``admin_email`` still holds a live lease ``lock_id``."""
        return self.db.query(ActionLock.id).filter(
            ActionLock.id == lock_id,
            ActionLock.admin_email == admin_email,
            ActionLock.expires_at > clock.now_ts(),
        ).first() is not None

    def get_resource_locks(self, resource_type, resource_id: str) -> List[ActionLock]:
        return self.db.query(ActionLock).filter(
            ActionLock.resource_type == _resource_value(resource_type),
            ActionLock.resource_id == resource_id,
            ActionLock.expires_at > clock.now_ts(),
        ).order_by(ActionLock.locked_at.desc()).all()

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def cleanup_expired_locks(self) -> int:
        """Delete every expired lock; returns how many rows went away."""
        now = clock.now_ts()
        try:
            expired = [
                LockEvent.from_lock(LockEventType.EXPIRED, lock)
                for lock in self.db.query(ActionLock).filter(ActionLock.expires_at <= now).all()
            ]
            deleted = self.db.query(ActionLock).filter(
                ActionLock.expires_at <= now
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Storage error during lock sweep: {e}")
            raise StorageFault("Failed to clean up expired locks") from e

        for event in expired:
            self._publish(event)
        if deleted:
            logger.info(f"Cleaned up {deleted} expired action lock(s)")
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_live_lock(self, resource_type: str, resource_id: str, action: str, now: int) -> Optional[ActionLock]:
        return self.db.query(ActionLock).populate_existing().filter(
            ActionLock.resource_type == resource_type,
            ActionLock.resource_id == resource_id,
            ActionLock.action == action,
            ActionLock.expires_at > now,
        ).first()

    def _reclaim_expired(self, resource_type: str, resource_id: str, action: str, now: int) -> List[LockEvent]:
        tuple_filter = [
            ActionLock.resource_type == resource_type,
            ActionLock.resource_id == resource_id,
            ActionLock.action == action,
            ActionLock.expires_at <= now,
        ]
        expired = [
            LockEvent.from_lock(LockEventType.EXPIRED, lock)
            for lock in self.db.query(ActionLock).filter(*tuple_filter).all()
        ]
        if expired:
            self.db.query(ActionLock).filter(*tuple_filter).delete(synchronize_session=False)
        return expired

    def _publish(self, event: LockEvent) -> None:
        try:
            self.broadcaster.publish(event)
        except Exception as e:
            logger.warning(f"Failed to broadcast {event.type} for lock {event.lock_id}: {e}")
