from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supply_portal.config import settings
from supply_portal.models import ReferenceCounter


def _increment(db: Session, scope: str) -> int | None:
    result = db.execute(
        update(ReferenceCounter)
        .where(ReferenceCounter.scope == scope)
        .values(last_value=ReferenceCounter.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return db.execute(select(ReferenceCounter.last_value).where(ReferenceCounter.scope == scope)).scalar_one()


def next_sequence_value(db: Session, scope: str) -> int:
    """Atomically bump the counter for ``scope`` and return the new value.

    The UPDATE takes the row lock, so two transactions allocating in the same
    scope serialize on it instead of reading the same count.
    """
    value = _increment(db, scope)
    if value is not None:
        return value

    try:
        with db.begin_nested():
            db.add(ReferenceCounter(scope=scope, last_value=1))
        return 1
    except IntegrityError:
        # Another transaction created the scope first.
        value = _increment(db, scope)
        if value is None:
            raise
        return value


def next_request_reference(db: Session, *, now: datetime | None = None) -> str:
    year = (now or datetime.now(tz=timezone.utc)).year
    prefix = settings.request_reference_prefix
    seq = next_sequence_value(db, f'{prefix}-{year}')
    return f'{prefix}-{year}-{seq:04d}'
