"""
Optimistic Version Guard

Every booking mutation is a compare-and-swap on ``updated_at``:

    UPDATE bookings SET ..., updated_at = :new WHERE id = :id AND updated_at = :expected

Zero affected rows means either the row is gone (NotFound) or another
writer got there first (Conflict). Retrying is the caller's call: it
has to re-read and decide whether its change still makes sense.
"""

import logging
from typing import Any, Dict, Type, TypeVar

from sqlalchemy.orm import Session

from ..exceptions import Conflict, NotFound
from ..utils import clock
from ..utils.db_helpers import compare_and_swap

logger = logging.getLogger(__name__)

T = TypeVar('T')


def next_version(expected_updated_at: int) -> int:
    """New stamp; strictly greater than the one being replaced."""
    return max(clock.now_ts(), expected_updated_at + 1)


def guarded_update(
    db: Session,
    model: Type[T],
    entity_id: str,
    expected_updated_at: int,
    values: Dict[str, Any],
) -> int:
    """
    Apply ``values`` to the row only if it still carries
    ``expected_updated_at``. Does not commit.

    Returns:
        The new ``updated_at`` stamp.

    Raises:
        NotFound: the row does not exist.
        Conflict: the row exists but was modified since it was read.
    """
    new_version = next_version(expected_updated_at)
    changes = dict(values)
    changes["updated_at"] = new_version

    affected = compare_and_swap(
        db,
        model,
        [model.id == entity_id, model.updated_at == expected_updated_at],
        changes,
    )

    if affected == 0:
        current = db.query(model.updated_at).filter(model.id == entity_id).first()
        if current is None:
            raise NotFound(
                f"{model.__name__} {entity_id} not found",
                details={"id": entity_id},
            )
        logger.warning(
            f"Optimistic lock conflict on {model.__name__} {entity_id}: "
            f"expected version {expected_updated_at}, found {current[0]}"
        )
        raise Conflict(
            f"{model.__name__} was modified by another process. Please refresh and try again.",
            details={
                "id": entity_id,
                "expected_updated_at": expected_updated_at,
                "current_updated_at": current[0],
            },
        )

    return new_version


def guarded_delete(db: Session, model: Type[T], entity_id: str, expected_updated_at: int) -> None:
    """
    Delete the row only if it still carries ``expected_updated_at``.
    Does not commit.

    Raises:
        NotFound: the row does not exist.
        Conflict: the row exists but was modified since it was read.
    """
    deleted = db.query(model).filter(
        model.id == entity_id,
        model.updated_at == expected_updated_at,
    ).delete(synchronize_session=False)
    if deleted:
        return

    current = db.query(model.updated_at).filter(model.id == entity_id).first()
    if current is None:
        raise NotFound(f"{model.__name__} {entity_id} not found", details={"id": entity_id})
    logger.warning(
        f"Optimistic lock conflict deleting {model.__name__} {entity_id}: "
        f"expected version {expected_updated_at}, found {current[0]}"
    )
    raise Conflict(
        f"{model.__name__} was modified by another process. Please refresh and try again.",
        details={
            "id": entity_id,
            "expected_updated_at": expected_updated_at,
            "current_updated_at": current[0],
        },
    )
