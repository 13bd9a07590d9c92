"""
Tests for deposit evidence uploads and the orphaned deposit sweep
"""

from datetime import datetime, timezone

import pytest

from app.config import settings
from app.exceptions import Conflict, InvalidToken, InvalidTransition, LockContention, TokenExpired, ValidationFailed
from app.models.action_lock import ResourceType
from app.models.audit_log import AdminActionLog
from app.models.booking import Booking
from app.models.job_queue import JobType, RetryJob
from app.services import deposit_cleanup
from app.services.action_lock_service import ActionLockService
from app.services.booking_service import BookingService
from app.services.deposit_cleanup import cleanup_orphaned_deposit_blobs
from app.services.deposit_service import (
    DEPOSIT_LOCK_ACTION,
    MAX_DEPOSIT_BYTES,
    DepositService,
    validate_deposit_file,
)
from app.utils.dependencies import AdminIdentity

JPEG = b"\xff\xd8\xff\xe0" + b"0" * 256
ALICE = AdminIdentity(email="alice@venue.test", name="Alice")


def _always_extends(lock_id, admin_email):
    return True


@pytest.fixture
def service(db, blob_store):
    return DepositService(db, blob_store)


@pytest.fixture
def extended_grace(monkeypatch):
    monkeypatch.setattr(settings, "token_extended_grace_period_seconds", 300)


def _lock_state(db, booking_id):
    return ActionLockService(db).is_locked(ResourceType.BOOKING, booking_id, DEPOSIT_LOCK_ACTION)


class TestValidateDepositFile:

    def test_accepts_supported_images(self):
        assert validate_deposit_file(JPEG, "image/jpeg") == ".jpg"
        assert validate_deposit_file(JPEG, "IMAGE/PNG") == ".png"
        assert validate_deposit_file(JPEG, "image/heic") == ".heic"

    def test_rejects_empty_file(self):
        with pytest.raises(ValidationFailed):
            validate_deposit_file(b"", "image/jpeg")

    def test_rejects_oversized_file(self):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_deposit_file(b"0" * (MAX_DEPOSIT_BYTES + 1), "image/jpeg")
        assert exc_info.value.details["max_size"] == MAX_DEPOSIT_BYTES

    def test_rejects_other_content_types(self):
        with pytest.raises(ValidationFailed):
            validate_deposit_file(JPEG, "application/pdf")
        with pytest.raises(ValidationFailed):
            validate_deposit_file(JPEG, None)


class TestUserDeposit:

    def test_upload_marks_deposit_paid(self, db, service, blob_store, make_booking):
        booking = make_booking(status="pending_deposit", token="tok-1")
        booking_id = booking.id

        result = service.upload_user_deposit("tok-1", JPEG, "image/jpeg")

        assert result.status == "paid_deposit"
        assert result.deposit_evidence_url.startswith(f"https://blobs.test/deposit-{booking_id}-")
        assert result.deposit_evidence_url.endswith(".jpg")
        assert result.deposit_evidence_url in blob_store.blobs

        history = BookingService(db).get_status_history(booking_id)
        assert [(h.old_status, h.new_status, h.changed_by) for h in history] == [
            ("pending_deposit", "paid_deposit", "user"),
        ]

    def test_postponed_without_evidence_can_upload(self, service, make_booking):
        make_booking(status="postponed", token="tok-1")
        assert service.upload_user_deposit("tok-1", JPEG, "image/png").status == "paid_deposit"

    def test_postponed_with_evidence_is_refused_before_upload(self, service, blob_store, make_booking):
        make_booking(status="postponed", token="tok-1", deposit_evidence_url="https://blobs.test/deposit-old.jpg")

        with pytest.raises(InvalidTransition):
            service.upload_user_deposit("tok-1", JPEG, "image/jpeg")
        assert blob_store.blobs == {}

    def test_wrong_status_is_refused_before_upload(self, service, blob_store, make_booking):
        make_booking(status="confirmed", token="tok-1")

        with pytest.raises(InvalidTransition):
            service.upload_user_deposit("tok-1", JPEG, "image/jpeg")
        assert blob_store.blobs == {}

    def test_unknown_token(self, service, blob_store, make_booking):
        make_booking(status="pending_deposit", token="tok-1")

        with pytest.raises(InvalidToken):
            service.upload_user_deposit("tok-2", JPEG, "image/jpeg")
        assert blob_store.blobs == {}

    def test_token_expired_on_arrival(self, service, blob_store, make_booking, fake_clock):
        make_booking(status="pending_deposit", token="tok-1", token_expires_at=fake_clock.now - 301)

        with pytest.raises(TokenExpired):
            service.upload_user_deposit("tok-1", JPEG, "image/jpeg")
        assert blob_store.blobs == {}

    def test_slow_upload_within_extended_grace_commits(self, service, blob_store, make_booking, fake_clock, extended_grace):
        expires_at = fake_clock.now + 60
        make_booking(status="pending_deposit", token="tok-1", token_expires_at=expires_at)
        blob_store.on_put = lambda url: setattr(fake_clock, "now", expires_at + 240)

        result = service.upload_user_deposit("tok-1", JPEG, "image/jpeg")

        assert result.status == "paid_deposit"
        assert result.deposit_evidence_url in blob_store.blobs

    def test_slow_upload_past_extended_grace_leaves_no_blob(
        self, db, service, blob_store, make_booking, fake_clock, extended_grace
    ):
        expires_at = fake_clock.now + 60
        booking = make_booking(status="pending_deposit", token="tok-1", token_expires_at=expires_at)
        booking_id = booking.id
        blob_store.on_put = lambda url: setattr(fake_clock, "now", expires_at + 360)

        with pytest.raises(TokenExpired) as exc_info:
            service.upload_user_deposit("tok-1", JPEG, "image/jpeg")

        assert exc_info.value.details["operation"] == "deposit_upload"
        assert blob_store.blobs == {}
        assert len(blob_store.deleted) == 1
        fresh = BookingService(db).get_booking(booking_id)
        assert fresh.status == "pending_deposit"
        assert fresh.deposit_evidence_url is None
        assert db.query(RetryJob).count() == 0

    def test_expired_upload_with_failing_delete_queues_one_job(
        self, db, service, blob_store, make_booking, fake_clock, extended_grace
    ):
        expires_at = fake_clock.now + 60
        make_booking(status="pending_deposit", token="tok-1", token_expires_at=expires_at)
        uploaded = []

        def slow_put(url):
            uploaded.append(url)
            fake_clock.now = expires_at + 360
            blob_store.fail_delete = True

        blob_store.on_put = slow_put

        with pytest.raises(TokenExpired):
            service.upload_user_deposit("tok-1", JPEG, "image/jpeg")

        jobs = db.query(RetryJob).all()
        assert len(jobs) == 1
        assert jobs[0].job_type == JobType.CLEANUP_ORPHANED_BLOB.value
        assert jobs[0].payload["blob_url"] == uploaded[0]

    def test_status_change_during_upload_discards_blob(self, db, service, blob_store, make_booking, session_factory):
        booking = make_booking(status="pending_deposit", token="tok-1")
        booking_id, version = booking.id, booking.updated_at

        def admin_cancels(url):
            other = session_factory()
            try:
                BookingService(other).update_status(booking_id, "cancelled", version)
            finally:
                other.close()

        blob_store.on_put = admin_cancels

        with pytest.raises(InvalidTransition):
            service.upload_user_deposit("tok-1", JPEG, "image/jpeg")

        assert blob_store.blobs == {}
        fresh = BookingService(db).get_booking(booking_id)
        assert fresh.status == "cancelled"
        assert fresh.deposit_evidence_url is None

    def test_resend_during_upload_rejects_old_token(self, db, service, blob_store, make_booking, session_factory):
        booking = make_booking(status="pending_deposit", token="tok-1")
        booking_id, version = booking.id, booking.updated_at

        def resend(url):
            other = session_factory()
            try:
                BookingService(other).issue_response_token(booking_id, version)
            finally:
                other.close()

        blob_store.on_put = resend

        with pytest.raises(InvalidToken):
            service.upload_user_deposit("tok-1", JPEG, "image/jpeg")
        assert blob_store.blobs == {}

    def test_new_upload_replaces_previous_evidence(self, db, service, blob_store, make_booking):
        old_url = blob_store.add("deposit-old.jpg")
        make_booking(status="pending_deposit", token="tok-1", deposit_evidence_url=old_url)

        result = service.upload_user_deposit("tok-1", JPEG, "image/jpeg")

        assert result.deposit_evidence_url != old_url
        assert old_url not in blob_store.blobs
        assert result.deposit_evidence_url in blob_store.blobs


class TestAdminDeposit:

    def test_upload_under_lock(self, db, service, blob_store, make_booking):
        booking = make_booking(status="pending_deposit")
        booking_id = booking.id

        result = service.upload_admin_deposit(booking_id, ALICE, JPEG, "image/webp", extend_fn=_always_extends)

        assert result.status == "paid_deposit"
        assert result.deposit_evidence_url.endswith(".webp")
        assert not _lock_state(db, booking_id).locked

        entry = db.query(AdminActionLog).filter(AdminActionLog.resource_id == booking_id).one()
        assert entry.action == "deposit_upload"
        assert entry.admin_email == "alice@venue.test"
        assert entry.details["deposit_evidence_url"] == result.deposit_evidence_url

        history = BookingService(db).get_status_history(booking_id)
        assert history[-1].changed_by == "alice@venue.test"

    def test_contention_with_other_admin(self, db, service, blob_store, make_booking):
        booking = make_booking(status="pending_deposit")
        ActionLockService(db).acquire(ResourceType.BOOKING, booking.id, DEPOSIT_LOCK_ACTION, "bob@venue.test", "Bob")

        with pytest.raises(LockContention) as exc_info:
            service.upload_admin_deposit(booking.id, ALICE, JPEG, "image/jpeg", extend_fn=_always_extends)

        assert exc_info.value.details["locked_by"] == "bob@venue.test"
        assert blob_store.blobs == {}

    def test_stale_version_is_refused_before_upload(self, db, service, blob_store, make_booking):
        booking = make_booking(status="pending_deposit")
        booking_id = booking.id

        with pytest.raises(Conflict):
            service.upload_admin_deposit(
                booking_id, ALICE, JPEG, "image/jpeg",
                expected_updated_at=booking.updated_at - 1,
                extend_fn=_always_extends,
            )

        assert blob_store.blobs == {}
        assert not _lock_state(db, booking_id).locked

    def test_concurrent_write_during_upload_conflicts(self, db, service, blob_store, make_booking, session_factory):
        booking = make_booking(status="pending_deposit")
        booking_id, version = booking.id, booking.updated_at

        def resend(url):
            other = session_factory()
            try:
                BookingService(other).issue_response_token(booking_id, version)
            finally:
                other.close()

        blob_store.on_put = resend

        with pytest.raises(Conflict):
            service.upload_admin_deposit(booking_id, ALICE, JPEG, "image/jpeg", extend_fn=_always_extends)

        assert blob_store.blobs == {}
        assert BookingService(db).get_booking(booking_id).status == "pending_deposit"
        assert db.query(AdminActionLog).count() == 0
        assert not _lock_state(db, booking_id).locked

    def test_lease_lost_during_upload_discards_blob(self, db, service, blob_store, make_booking, fake_clock):
        booking = make_booking(status="pending_deposit")
        booking_id = booking.id
        blob_store.on_put = lambda url: fake_clock.advance(31)

        with pytest.raises(LockContention):
            service.upload_admin_deposit(booking_id, ALICE, JPEG, "image/jpeg", extend_fn=_always_extends)

        assert blob_store.blobs == {}
        assert BookingService(db).get_booking(booking_id).deposit_evidence_url is None

    def test_replaces_previous_evidence(self, service, blob_store, make_booking):
        old_url = blob_store.add("deposit-old.png")
        booking = make_booking(status="pending_deposit", deposit_evidence_url=old_url)

        result = service.upload_admin_deposit(booking.id, ALICE, JPEG, "image/png", extend_fn=_always_extends)

        assert result.deposit_evidence_url != old_url
        assert old_url not in blob_store.blobs


def _iso(ts):
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class TestDepositSweep:

    def test_deletes_unreferenced_old_blobs_only(self, db, blob_store, make_booking, fake_clock):
        live = blob_store.add("deposit-live.jpg")
        make_booking(status="paid_deposit", deposit_evidence_url=live)
        stale = blob_store.add("deposit-stale.jpg", uploaded_at=_iso(fake_clock.now - 2 * 3600))
        undated = blob_store.add("deposit-undated.jpg")
        fresh = blob_store.add("deposit-fresh.jpg", uploaded_at=_iso(fake_clock.now - 600))
        other = blob_store.add("event-banner.jpg")

        result = cleanup_orphaned_deposit_blobs(db, blob_store)

        assert result.checked == 4
        assert result.orphaned == 2
        assert result.deleted == 2
        assert sorted(blob_store.deleted) == sorted([stale, undated])
        assert live in blob_store.blobs
        assert fresh in blob_store.blobs
        assert other in blob_store.blobs

    def test_walks_every_page(self, db, blob_store, monkeypatch):
        monkeypatch.setattr(deposit_cleanup, "LIST_PAGE_SIZE", 2)
        for i in range(5):
            blob_store.add(f"deposit-{i}.jpg")

        result = cleanup_orphaned_deposit_blobs(db, blob_store)

        assert result.checked == 5
        assert result.deleted == 5

    def test_failed_deletes_go_to_one_batch_job(self, db, blob_store):
        urls = [blob_store.add(f"deposit-{i}.jpg") for i in range(3)]
        blob_store.fail_delete = True

        result = cleanup_orphaned_deposit_blobs(db, blob_store)

        assert result.deleted == 0
        assert result.queued == 3
        assert len(result.errors) == 3
        job = db.query(RetryJob).one()
        assert job.job_type == JobType.CLEANUP_ORPHANED_BLOBS_BATCH.value
        assert sorted(job.payload["blob_urls"]) == sorted(urls)

    def test_nothing_to_do(self, db, blob_store):
        result = cleanup_orphaned_deposit_blobs(db, blob_store)
        assert result.to_dict() == {"checked": 0, "orphaned": 0, "deleted": 0, "queued": 0, "errors": []}
        assert db.query(Booking).count() == 0
