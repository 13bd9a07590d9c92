# Models package
from .booking import Booking, BookingStatus, BookingStatusHistory
from .action_lock import ActionLock, ResourceType, LockEventType
from .job_queue import RetryJob, JobStatus, JobType
from .audit_log import AdminActionLog, AdminAction

__all__ = [
    "Booking", "BookingStatus", "BookingStatusHistory",
    "ActionLock", "ResourceType", "LockEventType",
    "RetryJob", "JobStatus", "JobType",
    "AdminActionLog", "AdminAction",
]
