"""
Tests for the lock extension daemon and hold_action_lock
"""

import threading

import pytest

from app.exceptions import LockContention
from app.models.action_lock import ActionLock, ResourceType
from app.services.action_lock_service import ActionLockService
from app.services.lock_extension import (
    LockExtensionManager,
    create_lock_extension_manager,
    hold_action_lock,
    session_extend_fn,
)

ALICE = "alice@venue.test"
BOB = "bob@venue.test"

WAIT = 2.0


class RecordingExtend:
    """extend_fn double: plays back ``outcomes`` (bool or exception), then returns True."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = 0
        self.called = threading.Event()
        self.exhausted = threading.Event()

    def __call__(self, lock_id, admin_email):
        self.calls += 1
        self.called.set()
        if not self.outcomes:
            self.exhausted.set()
            return True
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class LostCallback:
    def __init__(self):
        self.calls = 0
        self.fired = threading.Event()

    def __call__(self):
        self.calls += 1
        self.fired.set()


class TestLockExtensionManager:

    def test_extends_immediately_on_start(self):
        extend = RecordingExtend()
        manager = LockExtensionManager("lock-1", ALICE, extend, interval=3600)

        manager.start()
        try:
            assert extend.called.wait(WAIT)
            assert manager.is_active
        finally:
            manager.stop()
            manager.join(WAIT)

        assert not manager.is_active
        assert extend.calls == 1

    def test_lease_gone_stops_and_fires_callback_once(self):
        extend = RecordingExtend([False])
        lost = LostCallback()
        manager = LockExtensionManager("lock-1", ALICE, extend, on_lock_lost=lost, interval=0.01)

        manager.start()
        assert lost.fired.wait(WAIT)
        manager.join(WAIT)

        assert manager.lost
        assert not manager.is_active
        assert lost.calls == 1
        assert extend.calls == 1

    def test_consecutive_failures_hit_threshold(self):
        extend = RecordingExtend([RuntimeError("network down")] * 5)
        lost = LostCallback()
        manager = LockExtensionManager(
            "lock-1", ALICE, extend, on_lock_lost=lost, interval=0.01, max_consecutive_failures=3
        )

        manager.start()
        assert lost.fired.wait(WAIT)
        manager.join(WAIT)

        assert extend.calls == 3
        assert lost.calls == 1

    def test_success_resets_failure_count(self):
        boom = RuntimeError("timeout")
        extend = RecordingExtend([boom, boom, True, boom, boom, True])
        lost = LostCallback()
        manager = LockExtensionManager(
            "lock-1", ALICE, extend, on_lock_lost=lost, interval=0.01, max_consecutive_failures=3
        )

        manager.start()
        try:
            assert extend.exhausted.wait(WAIT)
        finally:
            manager.stop()
            manager.join(WAIT)

        assert not manager.lost
        assert lost.calls == 0
        assert manager.consecutive_failures == 0

    def test_result_of_in_flight_tick_is_discarded_after_stop(self):
        gate = threading.Event()
        entered = threading.Event()
        lost = LostCallback()

        def slow_extend(lock_id, admin_email):
            entered.set()
            gate.wait(WAIT)
            return False

        manager = LockExtensionManager("lock-1", ALICE, slow_extend, on_lock_lost=lost, interval=3600)
        manager.start()
        assert entered.wait(WAIT)

        manager.stop()
        gate.set()
        manager.join(WAIT)

        assert lost.calls == 0
        assert not manager.lost

    def test_start_and_stop_are_idempotent(self):
        extend = RecordingExtend()
        manager = LockExtensionManager("lock-1", ALICE, extend, interval=3600)

        manager.stop()  # before start
        manager.start()
        first_thread = manager._thread
        manager.start()
        assert manager._thread is first_thread
        assert extend.called.wait(WAIT)

        manager.stop()
        manager.stop()
        first_thread.join(WAIT)
        assert not first_thread.is_alive()
        assert extend.calls == 1

    def test_restart_after_stop_uses_fresh_run(self):
        extend = RecordingExtend()
        manager = LockExtensionManager("lock-1", ALICE, extend, interval=3600)

        manager.start()
        assert extend.called.wait(WAIT)
        first_thread = manager._thread
        manager.stop()
        first_thread.join(WAIT)

        extend.called.clear()
        manager.start()
        assert extend.called.wait(WAIT)
        assert manager.is_active
        manager.stop()
        manager.join(WAIT)
        assert extend.calls == 2

    def test_no_restart_once_lost(self):
        extend = RecordingExtend([False])
        lost = LostCallback()
        manager = LockExtensionManager("lock-1", ALICE, extend, on_lock_lost=lost, interval=3600)
        manager.start()
        assert lost.fired.wait(WAIT)
        manager.join(WAIT)

        manager.start()
        assert not manager.is_active
        assert extend.calls == 1

    def test_callback_errors_are_contained(self):
        def broken_callback():
            raise RuntimeError("ui already gone")

        extend = RecordingExtend([False])
        manager = LockExtensionManager("lock-1", ALICE, extend, on_lock_lost=broken_callback, interval=3600)
        manager.start()
        manager.join(WAIT)

        assert manager.lost

    def test_context_manager(self):
        extend = RecordingExtend()
        with LockExtensionManager("lock-1", ALICE, extend, interval=3600) as manager:
            assert extend.called.wait(WAIT)
            assert manager.is_active
        assert not manager.is_active

    def test_tick_is_a_noop_before_start(self):
        extend = RecordingExtend()
        manager = LockExtensionManager("lock-1", ALICE, extend, interval=3600)
        manager.tick()
        assert extend.calls == 0

    @pytest.mark.parametrize("lock_id,email", [(None, ALICE), ("", ALICE), ("lock-1", None), ("lock-1", "  ")])
    def test_factory_refuses_missing_identity(self, lock_id, email):
        assert create_lock_extension_manager(lock_id, email, RecordingExtend()) is None

    def test_factory_builds_manager(self):
        manager = create_lock_extension_manager("lock-1", ALICE, RecordingExtend(), interval=5)
        assert isinstance(manager, LockExtensionManager)
        assert manager.interval == 5


class TestSessionExtendFn:

    def test_extends_through_its_own_session(self, db, session_factory, broadcaster, fake_clock):
        lock_id = ActionLockService(db, broadcaster=broadcaster).acquire(ResourceType.BOOKING, "B1", "delete", ALICE)
        extend = session_extend_fn(session_factory)

        fake_clock.advance(10)
        assert extend(lock_id, ALICE) is True
        assert extend(lock_id, BOB) is False

        lock = db.get(ActionLock, lock_id, populate_existing=True)
        assert lock.expires_at > fake_clock.now + 20


def _always_extends(lock_id, admin_email):
    return True


class TestHoldActionLock:

    def test_holds_for_the_block_and_releases_after(self, db):
        service = ActionLockService(db)
        with hold_action_lock(db, ResourceType.EVENT, "E1", "event-images", ALICE, "Alice", _always_extends) as held:
            assert service.is_held(held.lock_id, ALICE)
            held.ensure_held()

        assert not service.is_locked(ResourceType.EVENT, "E1", "event-images").locked

    def test_released_when_block_raises(self, db):
        service = ActionLockService(db)
        with pytest.raises(RuntimeError):
            with hold_action_lock(db, ResourceType.EVENT, "E1", "event-images", ALICE, extend_fn=_always_extends):
                raise RuntimeError("upload failed")

        assert not service.is_locked(ResourceType.EVENT, "E1", "event-images").locked

    def test_contention_reports_holder(self, db):
        ActionLockService(db).acquire(ResourceType.EVENT, "E1", "event-images", BOB, "Bob")

        with pytest.raises(LockContention) as exc_info:
            with hold_action_lock(db, ResourceType.EVENT, "E1", "event-images", ALICE, extend_fn=_always_extends):
                pytest.fail("should not enter the block")

        details = exc_info.value.details
        assert details["locked_by"] == BOB
        assert details["locked_by_name"] == "Bob"
        assert details["resource_type"] == "event"
        assert exc_info.value.status_code == 409

    def test_ensure_held_fails_after_lock_lost_callback(self, db):
        with hold_action_lock(db, ResourceType.BOOKING, "B1", "delete", ALICE, extend_fn=_always_extends) as held:
            held.mark_lost()
            with pytest.raises(LockContention):
                held.ensure_held()

    def test_ensure_held_fails_once_lease_expired(self, db, fake_clock):
        with hold_action_lock(db, ResourceType.BOOKING, "B1", "delete", ALICE, extend_fn=_always_extends) as held:
            fake_clock.advance(31)
            with pytest.raises(LockContention):
                held.ensure_held()
