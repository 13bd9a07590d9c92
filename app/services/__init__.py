# Services package
from .version_guard import guarded_update, guarded_delete, next_version
from .booking_state import (
    ALLOWED_TRANSITIONS, TERMINAL_STATUSES, USER_CANCELLABLE,
    coerce_status, is_terminal, can_transition, validate_transition,
    can_upload_deposit, validate_deposit_upload
)
from .token_validation import (
    TokenValidation, grace_period_seconds, validate_token_expiration,
    check_token_matches, validate_booking_token, revalidate_token_before_operation
)
from .action_lock_service import ActionLockService, LockStatus
from .lock_events import LockEvent, LockEventBroadcaster, get_lock_broadcaster
from .lock_extension import (
    LockExtensionManager,
    create_lock_extension_manager,
    HeldLock,
    hold_action_lock
)
from .blob_store import BlobStore, HttpBlobStore, get_blob_store
from .two_phase_write import OrphanSafeWrite
from .job_queue import JobQueue, JobBatchResult, enqueue_blob_cleanup
from .booking_service import BookingService
from .deposit_service import DepositService
from .deposit_cleanup import CleanupResult, cleanup_orphaned_deposit_blobs

__all__ = [
    "guarded_update", "guarded_delete", "next_version",
    "ALLOWED_TRANSITIONS", "TERMINAL_STATUSES", "USER_CANCELLABLE",
    "coerce_status", "is_terminal", "can_transition", "validate_transition",
    "can_upload_deposit", "validate_deposit_upload",
    "TokenValidation", "grace_period_seconds", "validate_token_expiration",
    "check_token_matches", "validate_booking_token", "revalidate_token_before_operation",
    "ActionLockService", "LockStatus",
    "LockEvent", "LockEventBroadcaster", "get_lock_broadcaster",
    "LockExtensionManager", "create_lock_extension_manager", "HeldLock", "hold_action_lock",
    "BlobStore", "HttpBlobStore", "get_blob_store",
    "OrphanSafeWrite",
    "JobQueue", "JobBatchResult", "enqueue_blob_cleanup",
    "BookingService",
    "DepositService",
    "CleanupResult", "cleanup_orphaned_deposit_blobs"
]
