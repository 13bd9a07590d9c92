from pydantic import BaseModel
from typing import Optional, Dict, Any


class RetryJobResponse(BaseModel):
    id: str
    job_type: str
    payload: Dict[str, Any]
    priority: int
    status: str
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    scheduled_at: int
    next_retry_at: Optional[int] = None
    created_at: int
    updated_at: int
    completed_at: Optional[int] = None

    class Config:
        from_attributes = True
