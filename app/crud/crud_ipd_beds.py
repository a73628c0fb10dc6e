# FILE: app/crud/crud_ipd_beds.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import BedReloadFailed
from app.models.ipd import (BED_OCCUPIED, BED_VACANT, TAT_IDLE, IpdBed,
                            cleared_form_fields)
from app.schemas.ipd import BedOut
from app.services.bed_events import (BED_ADMITTED, BED_DISCHARGED, BED_UPDATED,
                                     BedChangeEvent, BedChangeNotifier)
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)


def get_bed(db: Session, bed_id: int) -> Optional[IpdBed]:
    # always re-read: other sessions update beds column by column
    return db.get(IpdBed, bed_id, populate_existing=True)


def list_beds(db: Session) -> List[IpdBed]:
    stmt = select(IpdBed).order_by(IpdBed.bed_number, IpdBed.id)
    return list(db.scalars(stmt.execution_options(populate_existing=True)))


def create_bed(db: Session,
               *,
               bed_number: str,
               room_type: str = "GENERAL",
               daily_rate: Decimal | float = 0,
               tat_seconds: int = 1800) -> IpdBed:
    bed = IpdBed(bed_number=bed_number,
                 room_type=room_type,
                 daily_rate=daily_rate,
                 state=BED_VACANT,
                 tat_status=TAT_IDLE,
                 tat_duration_seconds=tat_seconds,
                 tat_remaining_seconds=tat_seconds,
                 **cleared_form_fields())
    db.add(bed)
    db.commit()
    db.refresh(bed)
    return bed


def update_bed_fields(
    db: Session,
    bed_id: int,
    fields: Dict[str, Any],
    *,
    expect: Optional[Dict[str, Any]] = None,
    kind: str = BED_UPDATED,
    notifier: Optional[BedChangeNotifier] = None,
) -> Optional[IpdBed]:
    """
    UPDATE only the given columns of one bed, optionally conditioned on
    the stored values in `expect` (compare-and-set). One transaction.

    Returns the fresh bed, or None when no row matched (missing bed or
    `expect` no longer true). Publishes `kind` after commit.
    Raises BedReloadFailed when the write committed but the re-read failed.
    """
    stmt = update(IpdBed).where(IpdBed.id == bed_id)
    for col, value in (expect or {}).items():
        column = getattr(IpdBed, col)
        stmt = stmt.where(column.is_(None) if value is None else column == value)
    stmt = stmt.values(**fields, updated_at=utcnow()).execution_options(
        synchronize_session=False)

    try:
        matched = db.execute(stmt).rowcount
        if not matched:
            db.rollback()
            return None
        db.commit()
    except Exception:
        db.rollback()
        raise

    # committed from here on: nothing below may surface as a write failure
    try:
        bed = get_bed(db, bed_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("bed %s committed but not reloaded, %s not published: %s",
                     bed_id,
                     kind,
                     exc,
                     extra={"event": "bed_reload_failed", "bed_id": bed_id})
        raise BedReloadFailed(bed_id, exc) from exc

    if notifier is not None and bed is not None:
        try:
            publish_bed(notifier, bed, kind)
        except Exception as exc:
            logger.error("%s for bed %s not published: %s",
                         kind,
                         bed_id,
                         exc,
                         exc_info=exc,
                         extra={"event": "bed_notify_failed", "bed_id": bed_id})
    return bed


def occupy_bed(
    db: Session,
    bed_id: int,
    *,
    patient_id: str,
    admission_id: int,
    ipd_number: str,
    admitted_at: datetime,
    tat_seconds: int,
    notifier: Optional[BedChangeNotifier] = None,
) -> Optional[IpdBed]:
    """Vacant -> occupied; None when the bed was no longer vacant at write time."""
    fields = dict(
        state=BED_OCCUPIED,
        patient_id=patient_id,
        active_admission_id=admission_id,
        ipd_number=ipd_number,
        admission_date=admitted_at,
        tat_start_time=None,
        tat_status=TAT_IDLE,
        tat_duration_seconds=tat_seconds,
        tat_remaining_seconds=tat_seconds,
        **cleared_form_fields(),
    )
    return update_bed_fields(db,
                             bed_id,
                             fields,
                             expect={"state": BED_VACANT},
                             kind=BED_ADMITTED,
                             notifier=notifier)


def vacate_bed(
    db: Session,
    bed_id: int,
    *,
    admission_id: int,
    tat_seconds: int,
    notifier: Optional[BedChangeNotifier] = None,
) -> Optional[IpdBed]:
    """Occupied by `admission_id` -> vacant with every per-admission field cleared."""
    fields = dict(
        state=BED_VACANT,
        patient_id=None,
        active_admission_id=None,
        ipd_number=None,
        admission_date=None,
        tat_start_time=None,
        tat_status=TAT_IDLE,
        tat_duration_seconds=tat_seconds,
        tat_remaining_seconds=tat_seconds,
        **cleared_form_fields(),
    )
    return update_bed_fields(db,
                             bed_id,
                             fields,
                             expect={
                                 "state": BED_OCCUPIED,
                                 "active_admission_id": admission_id,
                             },
                             kind=BED_DISCHARGED,
                             notifier=notifier)


def publish_bed(notifier: BedChangeNotifier, bed: IpdBed, kind: str) -> None:
    now = utcnow()
    event = BedChangeEvent(kind=kind,
                           bed_id=bed.id,
                           bed=BedOut.from_bed(bed, now).model_dump(mode="json"),
                           occurred_at=now)
    delivered = notifier.publish(event)
    logger.debug("%s delivered to %d subscriber(s)",
                 kind,
                 delivered,
                 extra={
                     "event": "bed_published",
                     "bed_id": bed.id
                 })
