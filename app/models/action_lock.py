"""
Action Lock Model

A lease on a (resource_type, resource_id, action) tuple held by one admin
identity. The unique constraint on the tuple is what makes acquisition
atomic across server instances; expiry is enforced by every query that
reads or extends a lock.
"""

import uuid
import enum

from sqlalchemy import Column, String, Integer, Index, UniqueConstraint

from ..database import Base


class ResourceType(str, enum.Enum):
    BOOKING = "booking"
    EVENT = "event"
    IMAGE = "image"
    EMAIL = "email"
    DASHBOARD = "dashboard"
    GLOBAL = "global"


class LockEventType(str, enum.Enum):
    ACQUIRED = "lock:acquired"
    EXTENDED = "lock:extended"
    RELEASED = "lock:released"
    EXPIRED = "lock:expired"


class ActionLock(Base):
    __tablename__ = "action_locks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    resource_type = Column(String(20), nullable=False)
    resource_id = Column(String(255), nullable=False)
    action = Column(String(100), nullable=False)

    # Holder
    admin_email = Column(String(255), nullable=False)
    admin_name = Column(String(255), nullable=True)  # display only

    # Epoch seconds
    locked_at = Column(Integer, nullable=False)
    expires_at = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("resource_type", "resource_id", "action", name="uq_action_lock_resource_action"),
        Index("ix_action_lock_expires_at", "expires_at"),
    )

    def is_live(self, now: int) -> bool:
        return self.expires_at > now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "action": self.action,
            "admin_email": self.admin_email,
            "admin_name": self.admin_name,
            "locked_at": self.locked_at,
            "expires_at": self.expires_at,
        }

    def __repr__(self):
        return f"<ActionLock {self.resource_type}:{self.resource_id}:{self.action} by {self.admin_email}>"
