"""
FastAPI dependencies for caller identity.

Admins are authenticated upstream; the identity provider forwards the
admin's stable email and display name as ``X-Admin-Email`` /
``X-Admin-Name``. Cron callers present ``Authorization: Bearer <CRON_SECRET>``.
"""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..services.lock_extension import ExtendFn, bind_extend_fn
from .logging_config import actor_var


@dataclass(frozen=True)
class AdminIdentity:
    email: str
    name: Optional[str] = None


async def get_current_admin(
    request: Request,
    x_admin_email: Optional[str] = Header(None),
    x_admin_name: Optional[str] = Header(None),
) -> AdminIdentity:
    email = (x_admin_email or "").strip().lower()
    if not email or "@" not in email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Admin identity required", "code": "Unauthorized", "details": {}},
        )
    name = (x_admin_name or "").strip() or None
    actor_var.set(email)
    request.state.admin_email = email
    return AdminIdentity(email=email, name=name)


async def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    expected = settings.cron_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "CRON_SECRET is not configured", "code": "Unavailable", "details": {}},
        )
    supplied = (authorization or "").removeprefix("Bearer ").strip()
    if not hmac.compare_digest(supplied, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid cron secret", "code": "Unauthorized", "details": {}},
        )


def get_lock_extend_fn(db: Session = Depends(get_db)) -> ExtendFn:
    """How held locks are kept alive during long admin requests."""
    return bind_extend_fn(db)
