"""
Admin Action Log Model

Append-only record of admin actions taken against locked resources.
"""
from decimal import Decimal
import uuid
import enum

from sqlalchemy import Column, String, Text, Integer, JSON

from ..database import Base
from ..utils import clock


def _serialize_for_json(obj):
    """Convert non-JSON-serializable types to serializable ones"""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return {k: _serialize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize_for_json(i) for i in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, enum.Enum):
        return obj.value
    return obj


class AdminAction(str, enum.Enum):
    STATUS_CHANGE = "status_change"
    DEPOSIT_UPLOAD = "deposit_upload"
    BOOKING_DELETE = "booking_delete"
    TOKEN_RESEND = "token_resend"
    JOB_RETRY = "job_retry"


class AdminActionLog(Base):
    __tablename__ = "admin_action_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    action = Column(String(50), nullable=False, index=True)
    resource_type = Column(String(20), nullable=False)
    resource_id = Column(String(255), nullable=True, index=True)
    admin_email = Column(String(255), nullable=False)
    admin_name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(Integer, nullable=False, default=lambda: clock.now_ts(), index=True)

    def __repr__(self):
        return f"<AdminActionLog {self.action} {self.resource_type}:{self.resource_id} by {self.admin_email}>"

    @classmethod
    def log(cls, db, admin, action: AdminAction, resource_type: str,
            resource_id: str = None, description: str = None, details: dict = None):
        """
        Record an admin action. Added to the session; the caller commits
        together with the change it describes.
        """
        entry = cls(
            action=action.value,
            resource_type=resource_type,
            resource_id=resource_id,
            admin_email=admin.email,
            admin_name=admin.name,
            description=description,
            details=_serialize_for_json(details),
        )
        db.add(entry)
        return entry
