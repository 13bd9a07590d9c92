from pydantic import BaseModel, Field
from typing import Optional, List

from ..models.action_lock import ResourceType


class LockAcquireRequest(BaseModel):
    resource_type: ResourceType
    resource_id: str = Field(..., min_length=1, max_length=255)
    action: str = Field(..., min_length=1, max_length=100)


class LockAcquireResponse(BaseModel):
    success: bool = True
    lock_id: str
    expires_at: Optional[int] = None


class LockStatusResponse(BaseModel):
    locked: bool
    lock_id: Optional[str] = None
    locked_by: Optional[str] = None
    locked_by_name: Optional[str] = None
    expires_at: Optional[int] = None


class ActionLockResponse(BaseModel):
    id: str
    resource_type: str
    resource_id: str
    action: str
    admin_email: str
    admin_name: Optional[str] = None
    locked_at: int
    expires_at: int

    class Config:
        from_attributes = True


class ResourceLocksResponse(BaseModel):
    locks: List[ActionLockResponse] = []
