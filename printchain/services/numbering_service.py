from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import InstrumentedAttribute, Session

from printchain.errors import PersistenceFailure

logger = logging.getLogger(__name__)

T = TypeVar('T')

SEQUENCE_WIDTH = 6


def current_year() -> int:
    return datetime.now(tz=timezone.utc).year


def next_number(db: Session, column: InstrumentedAttribute, prefix: str, year: int | None = None) -> str:
    """Return ``{prefix}-{year}-{seq}`` one past the highest number already issued for that year."""
    stem = f'{prefix}-{year or current_year()}-'
    highest = db.execute(select(func.max(column)).where(column.like(f'{stem}%'))).scalar_one_or_none()
    sequence = 1
    if highest:
        match = re.search(r'(\d+)$', highest)
        if match:
            sequence = int(match.group(1)) + 1
    return f'{stem}{sequence:0{SEQUENCE_WIDTH}d}'


def insert_numbered(
    db: Session,
    *,
    column: InstrumentedAttribute,
    prefix: str,
    build: Callable[[str], T],
    attempts: int,
    on_conflict: Callable[[], object] | None = None,
) -> T:
    """Insert the row produced by ``build`` under a freshly issued number.

    A unique collision on the number is retried with the next one.
    ``on_conflict`` runs after each collision and may raise when the
    collision was on some other natural key.
    """
    for attempt in range(1, attempts + 1):
        number = next_number(db, column, prefix)
        row = build(number)
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
            return row
        except IntegrityError:
            logger.info('numbering.collision prefix=%s number=%s attempt=%d', prefix, number, attempt)
            if on_conflict is not None:
                on_conflict()
    raise PersistenceFailure(f'Could not issue a unique {prefix} number after {attempts} attempts')
