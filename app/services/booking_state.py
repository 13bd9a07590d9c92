"""
Booking status transitions.

    pending -> pending_deposit -> paid_deposit -> confirmed -> finished

with cancelled / rejected / postponed reachable as side branches.
finished, cancelled and rejected are terminal.
"""

from typing import Dict, FrozenSet, Optional

from ..exceptions import InvalidTransition
from ..models.booking import BookingStatus

S = BookingStatus

ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    S.PENDING: frozenset({S.PENDING_DEPOSIT, S.CONFIRMED, S.POSTPONED, S.REJECTED, S.CANCELLED}),
    S.PENDING_DEPOSIT: frozenset({S.PAID_DEPOSIT, S.POSTPONED, S.REJECTED, S.CANCELLED}),
    # paid_deposit -> pending_deposit is the "deposit rejected" path
    S.PAID_DEPOSIT: frozenset({S.CONFIRMED, S.PENDING_DEPOSIT, S.POSTPONED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.FINISHED, S.POSTPONED, S.CANCELLED}),
    S.POSTPONED: frozenset({S.PENDING, S.PENDING_DEPOSIT, S.PAID_DEPOSIT, S.CONFIRMED, S.CANCELLED}),
    S.FINISHED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Statuses where a user may still cancel through the magic link
USER_CANCELLABLE = frozenset({S.PENDING, S.PENDING_DEPOSIT, S.PAID_DEPOSIT, S.CONFIRMED, S.POSTPONED})


def coerce_status(value) -> BookingStatus:
    try:
        return BookingStatus(value)
    except ValueError:
        raise InvalidTransition(
            f"Unknown booking status: {value!r}",
            details={"status": value},
        )


def is_terminal(status) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def can_transition(old_status, new_status) -> bool:
    return coerce_status(new_status) in ALLOWED_TRANSITIONS[coerce_status(old_status)]


def validate_transition(
    old_status,
    new_status,
    booking_id: Optional[str] = None,
    deposit_evidence_url: Optional[str] = None,
) -> None:
    """Raise InvalidTransition unless ``old_status -> new_status`` is legal."""
    old, new = coerce_status(old_status), coerce_status(new_status)
    allowed = can_transition(old, new)
    # postponed -> paid_deposit only while no evidence is on record
    if allowed and old == S.POSTPONED and new == S.PAID_DEPOSIT and deposit_evidence_url:
        allowed = False
    if not allowed:
        raise InvalidTransition(
            f"Invalid status transition from {old.value} to {new.value}",
            details={
                "booking_id": booking_id,
                "from": old.value,
                "to": new.value,
                "valid_transitions": sorted(s.value for s in ALLOWED_TRANSITIONS[old]),
            },
        )


def can_upload_deposit(status, deposit_evidence_url: Optional[str]) -> bool:
    """
    Deposit evidence can be uploaded from pending_deposit, or from postponed
    when nothing has been uploaded yet.
    """
    current = coerce_status(status)
    if current == S.PENDING_DEPOSIT:
        return True
    return current == S.POSTPONED and not deposit_evidence_url


def validate_deposit_upload(status, deposit_evidence_url: Optional[str], booking_id: Optional[str] = None) -> None:
    if not can_upload_deposit(status, deposit_evidence_url):
        raise InvalidTransition(
            f"Deposit cannot be uploaded while the booking is {coerce_status(status).value}",
            details={
                "booking_id": booking_id,
                "from": coerce_status(status).value,
                "to": S.PAID_DEPOSIT.value,
                "has_deposit_evidence": bool(deposit_evidence_url),
            },
        )
