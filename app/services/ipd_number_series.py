# FILE: app/services/ipd_number_series.py
from __future__ import annotations

import logging
import re

from sqlalchemy import select, update
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import SequenceUnavailable
from app.models.ipd import IpdCounter
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

_DAY_KEY = re.compile(r"^\d{8}$")


def render_admission_number(day_key: str, counter: int, pad: int = 3) -> str:
    """
    IPD-YYYYMMDD-NNN; the counter is padded to at least `pad` digits and
    grows past 999 without truncation (IPD-20240301-1000).
    """
    return f"IPD-{day_key}-{counter:0{pad}d}"


def _upsert_increment_stmt(dialect: str, day_key: str):
    now = utcnow()
    values = dict(date_key=day_key, counter=1, created_at=now, updated_at=now)
    bump = dict(counter=IpdCounter.counter + 1, updated_at=now)

    if dialect == "mysql":
        return mysql_insert(IpdCounter).values(**values).on_duplicate_key_update(**bump)
    if dialect == "postgresql":
        return pg_insert(IpdCounter).values(**values).on_conflict_do_update(
            index_elements=[IpdCounter.date_key], set_=bump)
    if dialect == "sqlite":
        return sqlite_insert(IpdCounter).values(**values).on_conflict_do_update(
            index_elements=[IpdCounter.date_key], set_=bump)
    return None


def _increment_fallback(db: Session, day_key: str) -> None:
    # Dialects without an upsert: the UPDATE takes the row lock and bumps
    # server-side; only a missing row is inserted.
    bump = (update(IpdCounter).where(IpdCounter.date_key == day_key).values(
        counter=IpdCounter.counter + 1,
        updated_at=utcnow()).execution_options(synchronize_session=False))
    if db.execute(bump).rowcount:
        return
    try:
        with db.begin_nested():
            db.add(IpdCounter(date_key=day_key, counter=1))
    except IntegrityError:
        # a concurrent caller created the row first
        if not db.execute(bump).rowcount:
            raise


def next_admission_number(db: Session, day_key: str) -> str:
    """
    Concurrency-safe daily admission number.

    The increment is applied by the database in one statement
    (upsert ... counter = counter + 1) and read back inside the same
    transaction while the row lock is still held, then committed.
    The counter is never read into memory and written back.

    Example: IPD-20240301-001
    """
    if not _DAY_KEY.match(day_key or ""):
        raise ValueError(f"day_key must be YYYYMMDD, got {day_key!r}")

    try:
        stmt = _upsert_increment_stmt(db.get_bind().dialect.name, day_key)
        if stmt is not None:
            db.execute(stmt)
        else:
            _increment_fallback(db, day_key)
        seq = db.execute(
            select(IpdCounter.counter).where(
                IpdCounter.date_key == day_key)).scalar_one()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("admission counter increment failed: %s",
                     exc,
                     extra={"event": "sequence_unavailable"})
        raise SequenceUnavailable(day_key, exc.__class__.__name__) from exc

    number = render_admission_number(day_key, int(seq))
    logger.info("issued %s", number, extra={"event": "sequence_issued"})
    return number


def peek_counter(db: Session, day_key: str) -> int:
    """Last issued counter value for `day_key` (0 before the first admission)."""
    value = db.execute(
        select(IpdCounter.counter).where(
            IpdCounter.date_key == day_key)).scalar_one_or_none()
    return int(value or 0)
