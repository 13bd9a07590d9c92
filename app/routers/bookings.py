"""
Router for bookings
Guest magic-link actions (deposit upload, responses) and admin booking changes.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.action_lock import ResourceType
from ..schemas.booking import (
    BookingCreate,
    BookingCreatedResponse,
    BookingResponse,
    BookingStatusUpdate,
    BookingWithHistory,
    DepositUploadResponse,
    TokenResendRequest,
    UserResponseRequest,
)
from ..services.blob_store import BlobStore, get_blob_store
from ..services.booking_service import BookingService
from ..services.deposit_service import DepositService
from ..services.lock_extension import ExtendFn, hold_action_lock
from ..services.token_validation import validate_booking_token
from ..utils.dependencies import AdminIdentity, get_current_admin, get_lock_extend_fn
from ..utils.rate_limiter import get_rate_limit, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Bookings"])


# ============ Guest (magic link) ============

@router.post("/booking", response_model=BookingCreatedResponse, status_code=201)
@limiter.limit(get_rate_limit("booking_create"))
def create_booking(
    request: Request,
    payload: BookingCreate,
    db: Session = Depends(get_db),
):
    booking = BookingService(db).create_booking(payload.name, payload.email, payload.start_date)
    return BookingCreatedResponse(
        booking=BookingResponse.model_validate(booking),
        response_token=booking.response_token,
    )


@router.get("/booking/{token}", response_model=BookingResponse)
def get_booking_by_token(token: str, db: Session = Depends(get_db)):
    service = BookingService(db)
    booking = service.get_booking_by_token(token)
    validate_booking_token(booking, token)
    return booking


@router.post("/booking/deposit", response_model=DepositUploadResponse)
@limiter.limit(get_rate_limit("deposit_upload"))
def upload_deposit(
    request: Request,
    token: str = Form(..., min_length=1),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Guest uploads deposit evidence; booking moves to paid_deposit."""
    data = file.file.read()
    booking = DepositService(db, blob_store).upload_user_deposit(token, data, file.content_type)
    return DepositUploadResponse(booking=BookingResponse.model_validate(booking))


@router.post("/booking/response/{token}", response_model=BookingResponse)
@limiter.limit(get_rate_limit("token_response"))
def submit_response(
    request: Request,
    token: str,
    payload: UserResponseRequest,
    db: Session = Depends(get_db),
):
    """Guest cancels, or accepts a postponement."""
    return BookingService(db).submit_user_response(
        token, payload.action.value, payload.updated_at, payload.reason
    )


# ============ Admin ============

@router.get("/admin/bookings/{booking_id}", response_model=BookingWithHistory)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    return BookingService(db).get_booking(booking_id)


@router.patch("/admin/bookings/{booking_id}/status", response_model=BookingResponse)
def update_booking_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
    extend_fn: ExtendFn = Depends(get_lock_extend_fn),
):
    with hold_action_lock(
        db, ResourceType.BOOKING, booking_id, "status-change", admin.email, admin.name, extend_fn
    ) as held:
        held.ensure_held()
        return BookingService(db).update_status(
            booking_id,
            payload.status,
            payload.updated_at,
            admin=admin,
            reason=payload.reason,
            proposed_date=payload.proposed_date,
        )


@router.post("/admin/bookings/{booking_id}/resend-token", response_model=BookingResponse)
def resend_token(
    booking_id: str,
    payload: TokenResendRequest,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
):
    """Issue a fresh magic link; the previous one stops working."""
    return BookingService(db).issue_response_token(booking_id, payload.updated_at, admin=admin)


@router.delete("/admin/bookings/{booking_id}")
def delete_booking(
    booking_id: str,
    updated_at: int = Query(..., ge=0),
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(get_current_admin),
    extend_fn: ExtendFn = Depends(get_lock_extend_fn),
):
    with hold_action_lock(
        db, ResourceType.BOOKING, booking_id, "delete", admin.email, admin.name, extend_fn
    ) as held:
        held.ensure_held()
        BookingService(db).delete_booking(booking_id, updated_at, admin)
    return {"success": True, "booking_id": booking_id}


@router.post("/admin/deposit/{booking_id}/image", response_model=DepositUploadResponse)
def upload_admin_deposit(
    booking_id: str,
    file: UploadFile = File(...),
    updated_at: Optional[int] = Form(None),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    admin: AdminIdentity = Depends(get_current_admin),
    extend_fn: ExtendFn = Depends(get_lock_extend_fn),
):
    """Admin uploads deposit evidence on the guest's behalf, under the booking's deposit lock."""
    data = file.file.read()
    booking = DepositService(db, blob_store).upload_admin_deposit(
        booking_id, admin, data, file.content_type,
        expected_updated_at=updated_at,
        extend_fn=extend_fn,
    )
    return DepositUploadResponse(booking=BookingResponse.model_validate(booking))
