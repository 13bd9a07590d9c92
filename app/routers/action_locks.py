"""
Router for admin action locks
Acquire / extend / release leases and watch lock changes live.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from ..database import get_db
from ..exceptions import LockContention
from ..models.action_lock import ResourceType
from ..schemas.action_lock import (
    ActionLockResponse,
    LockAcquireRequest,
    LockAcquireResponse,
    LockStatusResponse,
    ResourceLocksResponse,
)
from ..services.action_lock_service import ActionLockService
from ..services.lock_events import get_lock_broadcaster
from ..utils import clock
from ..utils.dependencies import AdminIdentity, get_current_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/action-locks", tags=["Action Locks"])

# Seconds between keep-alive comments on the event stream
STREAM_PING_SECONDS = 15


@router.post("", response_model=LockAcquireResponse)
@router.post("/", response_model=LockAcquireResponse, include_in_schema=False)
def acquire_lock(
    payload: LockAcquireRequest,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    """Take the lease, or 409 with the current holder."""
    service = ActionLockService(db)
    lock_id = service.acquire(payload.resource_type, payload.resource_id, payload.action, admin.email, admin.name)
    lock_status = service.is_locked(payload.resource_type, payload.resource_id, payload.action)

    if lock_id is None:
        raise LockContention(
            f"This action is currently locked by {lock_status.locked_by_name or lock_status.locked_by or 'another admin'}",
            details={
                "resource_type": payload.resource_type.value,
                "resource_id": payload.resource_id,
                "action": payload.action,
                **lock_status.to_dict(),
            },
        )

    return LockAcquireResponse(lock_id=lock_id, expires_at=lock_status.expires_at)


@router.get("")
@router.get("/", include_in_schema=False)
def get_locks(
    resource_type: ResourceType = Query(...),
    resource_id: str = Query(..., min_length=1),
    action: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    """Status of one (resource, action) tuple, or every live lock on the resource."""
    service = ActionLockService(db)
    if action:
        return LockStatusResponse(**service.is_locked(resource_type, resource_id, action).to_dict())
    locks = service.get_resource_locks(resource_type, resource_id)
    return ResourceLocksResponse(locks=[ActionLockResponse.model_validate(lock) for lock in locks])


@router.get("/stream")
async def stream_lock_events(
    request: Request,
    resource_type: Optional[ResourceType] = Query(None),
    admin: AdminIdentity = Depends(get_current_admin),
):
    """
    Server-sent lock events for this server process.

    Events are hints to refresh; a client that reconnects should re-read
    lock status instead of relying on what it may have missed.
    """
    broadcaster = get_lock_broadcaster()
    subscription = broadcaster.subscribe(resource_type.value if resource_type else None)
    logger.info(f"Lock stream opened by {admin.email} ({broadcaster.subscriber_count} subscribers)")

    async def event_generator():
        try:
            yield {"event": "connected", "data": json.dumps({"timestamp": clock.now_ts()})}
            while not await request.is_disconnected():
                event = await subscription.get(timeout=STREAM_PING_SECONDS)
                if event is None:
                    continue
                yield {"event": event.type, "data": json.dumps(event.to_dict())}
        finally:
            broadcaster.unsubscribe(subscription)
            logger.info(f"Lock stream closed for {admin.email}")

    return EventSourceResponse(
        event_generator(),
        ping=STREAM_PING_SECONDS,
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
        },
    )


@router.patch("/{lock_id}", response_model=LockAcquireResponse)
def extend_lock(
    lock_id: str,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    """Push the lease forward; 409 once the lease is gone."""
    service = ActionLockService(db)
    if not service.extend(lock_id, admin.email):
        raise LockContention(
            "Action lock is no longer held. Please acquire it again.",
            details={"lock_id": lock_id},
        )
    return LockAcquireResponse(lock_id=lock_id)


@router.delete("/{lock_id}")
def release_lock(
    lock_id: str,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    released = ActionLockService(db).release(lock_id, admin.email)
    return {"success": True, "released": released}
