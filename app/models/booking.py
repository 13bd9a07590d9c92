import uuid
import enum

from sqlalchemy import Column, String, Text, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship

from ..database import Base
from ..utils import clock


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    PENDING_DEPOSIT = "pending_deposit"
    PAID_DEPOSIT = "paid_deposit"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    POSTPONED = "postponed"
    FINISHED = "finished"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    status = Column(String(30), nullable=False, default=BookingStatus.PENDING.value)

    # ISO date (YYYY-MM-DD); the token window closes at the start of the event
    start_date = Column(String(10), nullable=True)
    proposed_date = Column(String(10), nullable=True)

    # Magic link
    response_token = Column(String(64), nullable=True, unique=True)
    token_expires_at = Column(Integer, nullable=True)

    # External artifact
    deposit_evidence_url = Column(Text, nullable=True)

    # Epoch seconds; updated_at doubles as the optimistic version stamp
    created_at = Column(Integer, nullable=False, default=lambda: clock.now_ts())
    updated_at = Column(Integer, nullable=False, default=lambda: clock.now_ts())

    history = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingStatusHistory.created_at",
    )

    __table_args__ = (
        Index("ix_booking_status", "status"),
        Index("ix_booking_deposit_evidence", "deposit_evidence_url"),
    )

    def __repr__(self):
        return f"<Booking {self.id} {self.status}>"


class BookingStatusHistory(Base):
    """Append-only audit trail of status transitions."""
    __tablename__ = "booking_status_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    old_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=False)
    changed_by = Column(String(255), nullable=False)  # admin email, "user" or "system"
    change_reason = Column(Text, nullable=True)
    created_at = Column(Integer, nullable=False, default=lambda: clock.now_ts())

    booking = relationship("Booking", back_populates="history")

    def __repr__(self):
        return f"<BookingStatusHistory {self.booking_id} {self.old_status} -> {self.new_status}>"
