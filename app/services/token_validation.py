"""
Token Validity Guard

Magic-link tokens are checked twice: when the request arrives, and again
immediately before the database write. The second check matters for slow
operations (deposit uploads run image processing in between), which use
the extended grace period.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..config import settings
from ..exceptions import InvalidToken, TokenExpired
from ..utils import clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    reason: Optional[str] = None


def grace_period_seconds(use_extended_grace_period: bool = False) -> int:
    if use_extended_grace_period:
        return settings.token_extended_grace_period_seconds
    return settings.token_grace_period_seconds


def _iso(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def validate_token_expiration(
    token_expires_at: Optional[int],
    use_extended_grace_period: bool = False,
    now: Optional[int] = None,
) -> TokenValidation:
    """
    A token is honored until ``token_expires_at + grace``; the boundary
    second itself is still valid. A missing expiry never expires.
    """
    if not token_expires_at:
        return TokenValidation(valid=True)

    if now is None:
        now = clock.now_ts()

    grace = grace_period_seconds(use_extended_grace_period)
    if now > token_expires_at + grace:
        return TokenValidation(
            valid=False,
            reason=f"Token expired at {_iso(token_expires_at)} (grace period: {grace // 60} minutes)",
        )

    return TokenValidation(valid=True)


def check_token_matches(booking, token: str) -> None:
    """A resend replaces the stored token; older links stop working at once."""
    if not token or booking.response_token != token:
        logger.warning(f"Token rejected for booking {booking.id}: not the current token")
        raise InvalidToken(
            "This token is no longer valid. Please use the latest link from your email.",
            details={"booking_id": booking.id},
        )


def validate_booking_token(
    booking,
    token: str,
    use_extended_grace_period: bool = False,
    now: Optional[int] = None,
) -> None:
    """
    Check that ``token`` is the booking's current token and is still inside
    its window.

    Raises:
        InvalidToken: the token was replaced (e.g. after a resend) or never matched.
        TokenExpired: the window including grace has lapsed.
    """
    check_token_matches(booking, token)

    validation = validate_token_expiration(booking.token_expires_at, use_extended_grace_period, now)
    if not validation.valid:
        logger.warning(f"Token rejected for booking {booking.id}: {validation.reason}")
        raise TokenExpired(
            "Token has expired.",
            details={"booking_id": booking.id, "token_expires_at": booking.token_expires_at},
        )


def revalidate_token_before_operation(
    booking,
    operation: str,
    use_extended_grace_period: bool = False,
    now: Optional[int] = None,
) -> None:
    """
    Re-check the expiry window right before a destructive write.

    Raises:
        TokenExpired: the window lapsed while the operation was in flight.
    """
    validation = validate_token_expiration(booking.token_expires_at, use_extended_grace_period, now)
    if validation.valid:
        return

    grace = grace_period_seconds(use_extended_grace_period)
    logger.warning(
        f"Token expired during {operation} for booking {booking.id}: {validation.reason}"
    )
    raise TokenExpired(
        f"Token expired during {operation} operation. "
        f"Grace period ({grace // 60} minutes) has been exceeded. "
        "Please refresh and try again, or request a new link.",
        details={
            "booking_id": booking.id,
            "operation": operation,
            "token_expires_at": booking.token_expires_at,
            "grace_period_seconds": grace,
        },
    )
