"""
Shared fixtures: an in-memory database per test, a controllable clock and
an in-memory blob store.
"""

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Must be set before app.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401  register mappers
from app.database import Base, get_db
from app.exceptions import StorageFault
from app.models.booking import Booking, BookingStatus
from app.services.blob_store import BlobInfo, BlobListPage, get_blob_store
from app.utils import clock

# 2027-01-15T08:00:00Z
START_TS = 1800000000

ADMIN_HEADERS = {"X-Admin-Email": "alice@venue.test", "X-Admin-Name": "Alice"}
OTHER_ADMIN_HEADERS = {"X-Admin-Email": "bob@venue.test", "X-Admin-Name": "Bob"}
CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


class FakeClock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


class FakeBlobStore:
    """BlobStore kept in a dict. Flip ``fail_put`` / ``fail_delete`` to simulate outages."""

    base_url = "https://blobs.test"

    def __init__(self):
        self.blobs = {}
        self.deleted = []
        self.fail_put = False
        self.fail_delete = False
        self.on_put = None

    def put(self, data, pathname, content_type="application/octet-stream"):
        if self.fail_put:
            raise StorageFault("blob store unavailable")
        url = f"{self.base_url}/{pathname}"
        self.blobs[url] = BlobInfo(url=url, pathname=pathname, size=len(data))
        if self.on_put is not None:
            self.on_put(url)
        return url

    def delete(self, url):
        if self.fail_delete:
            raise StorageFault("blob store unavailable")
        self.blobs.pop(url, None)
        self.deleted.append(url)

    def list(self, prefix="", limit=1000, cursor=None):
        matching = sorted(
            (blob for blob in self.blobs.values() if blob.pathname.startswith(prefix)),
            key=lambda blob: blob.url,
        )
        start = int(cursor) if cursor else 0
        end = start + limit
        has_more = end < len(matching)
        return BlobListPage(blobs=matching[start:end], cursor=str(end) if has_more else None, has_more=has_more)

    def add(self, pathname, uploaded_at=None):
        url = f"{self.base_url}/{pathname}"
        self.blobs[url] = BlobInfo(url=url, pathname=pathname, size=1, uploaded_at=uploaded_at)
        return url


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return 1

    @property
    def types(self):
        return [event.type for event in self.events]


def iso_day(now: int, offset_days: int) -> str:
    day = datetime.fromtimestamp(now, tz=timezone.utc).date() + timedelta(days=offset_days)
    return day.isoformat()


@pytest.fixture(autouse=True)
def fake_clock(monkeypatch):
    fake = FakeClock(START_TS)
    monkeypatch.setattr(clock, "now_ts", fake)
    return fake


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def make_booking(db, fake_clock):
    """Insert a booking directly, bypassing the service layer."""

    def _make(
        status=BookingStatus.PENDING,
        start_in_days=30,
        token=None,
        token_expires_at=None,
        deposit_evidence_url=None,
        proposed_date=None,
        updated_at=None,
    ):
        now = fake_clock.now
        booking = Booking(
            name="Guest",
            email="guest@example.com",
            status=getattr(status, "value", status),
            start_date=iso_day(now, start_in_days) if start_in_days is not None else None,
            proposed_date=proposed_date,
            response_token=token or uuid.uuid4().hex,
            token_expires_at=token_expires_at if token_expires_at is not None else now + 7 * 24 * 3600,
            deposit_evidence_url=deposit_evidence_url,
            created_at=now,
            updated_at=updated_at if updated_at is not None else now,
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    return _make


@pytest.fixture
def client(session_factory, blob_store):
    from fastapi.testclient import TestClient

    from app.main import app
    from app.utils.dependencies import get_lock_extend_fn

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_lock_extend_fn] = lambda: (lambda lock_id, admin_email: True)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
