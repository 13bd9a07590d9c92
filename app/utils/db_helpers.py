"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Compare-and-swap updates with affected-row feedback
- Insert-or-ignore against a unique constraint
- Skip-locked queue reads for workers
"""

import logging
from typing import Any, Dict, List, Sequence, Type, TypeVar

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        dialect = db.bind.dialect.name
        return dialect == 'postgresql'
    except Exception:
        return False


def compare_and_swap(
    db: Session,
    model: Type[T],
    conditions: Sequence[Any],
    values: Dict[str, Any]
) -> int:
    """
    Run ``UPDATE model SET values WHERE conditions`` and return the number
    of affected rows.

    The caller decides what a zero means (lost race, expired lease, ...).
    The session is not synchronized; re-read the row if you need it.

    Example:
        changed = compare_and_swap(
            db, ActionLock,
            [ActionLock.id == lock_id, ActionLock.expires_at > now],
            {"expires_at": now + 30},
        )
    """
    stmt = (
        update(model)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    return result.rowcount or 0


def insert_on_conflict_do_nothing(
    db: Session,
    model: Type[T],
    values: Dict[str, Any],
    index_elements: List[str]
) -> int:
    """
    ``INSERT ... ON CONFLICT (index_elements) DO NOTHING``.

    Returns 1 when the row landed, 0 when the unique constraint already
    held a row. Supported on PostgreSQL and SQLite.
    """
    if is_postgres(db):
        stmt = postgresql.insert(model).values(**values)
    else:
        stmt = sqlite.insert(model).values(**values)

    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = db.execute(stmt)
    return result.rowcount or 0


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get pending records with skip_locked to prevent worker race conditions.

    Useful for background workers processing queues.

    Args:
        db: Database session
        model: SQLAlchemy model class
        filter_condition: Filter for pending records
        order_by: Optional ordering (single clause or sequence)
        limit: Maximum records to fetch

    Returns:
        List of locked model instances (other workers will skip these)
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        if isinstance(order_by, (list, tuple)):
            query = query.order_by(*order_by)
        else:
            query = query.order_by(order_by)

    # Only apply skip_locked on PostgreSQL
    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()
