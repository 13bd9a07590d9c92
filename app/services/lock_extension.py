"""
Lock Extension Daemon

Keeps one held action lock alive while a long operation runs.

    with hold_action_lock(db, "event", event_id, "event-images", admin.email, admin.name) as held:
        url = blob_store.put(...)          # slow
        held.ensure_held()                 # raises LockContention if the lease was lost
        ...

The manager extends once on start, then every ``interval`` seconds on a
daemon thread. A "lease gone" answer, or too many errors in a row, stops it
and fires ``on_lock_lost`` exactly once.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..exceptions import LockContention, StorageFault
from ..utils import clock
from .action_lock_service import ActionLockService

logger = logging.getLogger(__name__)

ExtendFn = Callable[[str, str], bool]


class LockExtensionManager:
    """
    Periodically extends ``lock_id`` on behalf of ``admin_email``.

    ``start()`` and ``stop()`` may be called any number of times from any
    thread. ``stop()`` flips the run's stop event first, so a tick that is
    already in flight finishes its call but its result is ignored.
    """

    def __init__(
        self,
        lock_id: str,
        admin_email: str,
        extend_fn: ExtendFn,
        on_lock_lost: Optional[Callable[[], None]] = None,
        interval: Optional[float] = None,
        max_consecutive_failures: Optional[int] = None,
    ):
        self.lock_id = lock_id
        self.admin_email = admin_email
        self.extend_fn = extend_fn
        self.on_lock_lost = on_lock_lost
        self.interval = interval if interval is not None else settings.lock_extension_interval_seconds
        self.max_consecutive_failures = max_consecutive_failures or settings.lock_max_consecutive_failures

        self.consecutive_failures = 0
        self.last_extended_at: Optional[int] = None
        self.lost = False

        self._state_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_active(self) -> bool:
        with self._state_lock:
            return self._stop_event is not None and not self._stop_event.is_set()

    def start(self) -> None:
        with self._state_lock:
            if self.lost:
                return
            if self._stop_event is not None and not self._stop_event.is_set():
                return
            # Each run gets its own event so a lingering thread from an
            # earlier run can never be revived by a restart
            stop_event = threading.Event()
            self._stop_event = stop_event
            self.consecutive_failures = 0
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name=f"lock-extension-{self.lock_id[:8]}",
                daemon=True,
            )
            thread = self._thread

        logger.debug(f"Lock extension started for {self.lock_id} (every {self.interval}s)")
        thread.start()

    def stop(self) -> None:
        with self._state_lock:
            stop_event = self._stop_event
            if stop_event is None or stop_event.is_set():
                return
            stop_event.set()
        logger.debug(f"Lock extension stopped for {self.lock_id}")

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the current run's thread to exit (tests and shutdown)."""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def tick(self) -> None:
        """Run one extension attempt now, if the manager is active."""
        with self._state_lock:
            stop_event = self._stop_event
        if stop_event is not None:
            self._tick(stop_event)

    def _run(self, stop_event: threading.Event) -> None:
        self._tick(stop_event)
        while not stop_event.wait(self.interval):
            self._tick(stop_event)

    def _tick(self, stop_event: threading.Event) -> None:
        if stop_event.is_set():
            return

        try:
            extended = self.extend_fn(self.lock_id, self.admin_email)
        except Exception as e:
            if stop_event.is_set():
                return
            self.consecutive_failures += 1
            logger.warning(
                f"Lock extension failed for {self.lock_id} "
                f"({self.consecutive_failures}/{self.max_consecutive_failures}): {e}"
            )
            if self.consecutive_failures >= self.max_consecutive_failures:
                self._lose(stop_event, f"{self.consecutive_failures} consecutive extension failures")
            return

        if stop_event.is_set():
            logger.debug(f"Discarding extension result for {self.lock_id}: manager stopped")
            return

        if extended:
            self.consecutive_failures = 0
            self.last_extended_at = clock.now_ts()
            return

        self._lose(stop_event, "lease no longer held")

    def _lose(self, stop_event: threading.Event, reason: str) -> None:
        with self._state_lock:
            if self.lost or stop_event.is_set():
                return
            self.lost = True
            stop_event.set()

        logger.warning(f"Action lock {self.lock_id} lost for {self.admin_email}: {reason}")
        if self.on_lock_lost is None:
            return
        try:
            self.on_lock_lost()
        except Exception as e:
            logger.error(f"on_lock_lost callback failed for {self.lock_id}: {e}", exc_info=True)

    def __enter__(self) -> "LockExtensionManager":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


def create_lock_extension_manager(
    lock_id: Optional[str],
    admin_email: Optional[str],
    extend_fn: ExtendFn,
    on_lock_lost: Optional[Callable[[], None]] = None,
    **kwargs,
) -> Optional[LockExtensionManager]:
    """Build a manager, or None when there is nothing to keep alive."""
    if not lock_id or not admin_email or not admin_email.strip():
        logger.warning("Lock extension not created: missing lock id or admin identity")
        return None
    return LockExtensionManager(lock_id, admin_email, extend_fn, on_lock_lost, **kwargs)


def session_extend_fn(session_factory: Callable[[], Session]) -> ExtendFn:
    """Extend in a short-lived session of its own; the daemon runs off the request thread."""

    def extend(lock_id: str, admin_email: str) -> bool:
        db = session_factory()
        try:
            return ActionLockService(db).extend(lock_id, admin_email)
        finally:
            db.close()

    return extend


def bind_extend_fn(db: Session) -> ExtendFn:
    """Extend through fresh sessions on the same engine as ``db``."""
    return session_extend_fn(sessionmaker(bind=db.get_bind(), autoflush=False))


class HeldLock:
    """Handle given to the body of ``hold_action_lock``."""

    def __init__(self, service: ActionLockService, lock_id: str, admin_email: str):
        self.service = service
        self.lock_id = lock_id
        self.admin_email = admin_email
        self._lost = threading.Event()

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    def mark_lost(self) -> None:
        self._lost.set()

    def ensure_held(self) -> None:
        """Fail fast before a write if the lease is no longer ours."""
        if self._lost.is_set() or not self.service.is_held(self.lock_id, self.admin_email):
            raise LockContention(
                "Action lock was lost before the operation completed. Please try again.",
                details={"lock_id": self.lock_id},
            )


@contextmanager
def hold_action_lock(
    db: Session,
    resource_type,
    resource_id: str,
    action: str,
    admin_email: str,
    admin_name: Optional[str] = None,
    extend_fn: Optional[ExtendFn] = None,
) -> Iterator[HeldLock]:
    """
    Acquire the lock, keep it alive for the duration of the block, release it after.

    Raises:
        LockContention: another admin holds the lock.
    """
    service = ActionLockService(db)
    lock_id = service.acquire(resource_type, resource_id, action, admin_email, admin_name)
    if lock_id is None:
        holder = service.is_locked(resource_type, resource_id, action)
        raise LockContention(
            f"This action is currently locked by {holder.locked_by_name or holder.locked_by or 'another admin'}",
            details={
                "resource_type": str(getattr(resource_type, "value", resource_type)),
                "resource_id": resource_id,
                "action": action,
                **holder.to_dict(),
            },
        )

    held = HeldLock(service, lock_id, admin_email)
    manager = LockExtensionManager(
        lock_id,
        admin_email,
        extend_fn or bind_extend_fn(db),
        on_lock_lost=held.mark_lost,
    )
    manager.start()
    try:
        yield held
    finally:
        manager.stop()
        try:
            service.release(lock_id, admin_email)
        except StorageFault as e:
            # The lease runs out on its own
            logger.error(f"Failed to release action lock {lock_id}: {e}")
