from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import date
from enum import Enum

from ..models.booking import BookingStatus


class BookingCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    start_date: Optional[str] = None


class BookingResponse(BaseModel):
    id: str
    name: str
    email: str
    status: str
    start_date: Optional[str] = None
    proposed_date: Optional[str] = None
    token_expires_at: Optional[int] = None
    deposit_evidence_url: Optional[str] = None
    created_at: int
    updated_at: int

    class Config:
        from_attributes = True


class BookingStatusHistoryResponse(BaseModel):
    id: str
    booking_id: str
    old_status: Optional[str] = None
    new_status: str
    changed_by: str
    change_reason: Optional[str] = None
    created_at: int

    class Config:
        from_attributes = True


class BookingStatusUpdate(BaseModel):
    """Admin status change; ``updated_at`` is the version the admin last saw."""
    status: BookingStatus
    updated_at: int = Field(..., ge=0)
    reason: Optional[str] = Field(None, max_length=1000)
    proposed_date: Optional[str] = None

    @field_validator("proposed_date")
    @classmethod
    def validate_proposed_date(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            date.fromisoformat(v)
        return v


class TokenResendRequest(BaseModel):
    updated_at: int = Field(..., ge=0)


class UserResponseAction(str, Enum):
    CANCEL = "cancel"
    ACCEPT_POSTPONEMENT = "accept_postponement"


class UserResponseRequest(BaseModel):
    action: UserResponseAction
    updated_at: Optional[int] = Field(None, ge=0)
    reason: Optional[str] = Field(None, max_length=1000)


class DepositUploadResponse(BaseModel):
    success: bool = True
    booking: BookingResponse


class BookingWithHistory(BookingResponse):
    history: List[BookingStatusHistoryResponse] = []


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    response_token: str
