# app/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy import func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.logging import configure_logging
from app.db.base import Base
from app.db.session import engine

# Import all models so metadata is complete
from app.models import IpdBed  # noqa: F401
from app.crud.crud_ipd_beds import create_bed

logger = logging.getLogger(__name__)


def create_tables(bind: Engine) -> None:
    Base.metadata.create_all(bind=bind)
    logger.info("tables: %s", sorted(inspect(bind).get_table_names()),
                extra={"event": "init_db"})


def seed_beds(
    db: Session,
    count: int,
    *,
    room_type: str = "GENERAL",
    daily_rate: float = 0,
    prefix: str = "B",
) -> int:
    """
    Create the fixed bed inventory B1..B<count>.
    Only missing bed numbers are inserted; safe to run multiple times.
    """
    existing = set(db.scalars(select(IpdBed.bed_number)))
    created = 0
    for n in range(1, count + 1):
        number = f"{prefix}{n}"
        if number in existing:
            continue
        create_bed(db,
                   bed_number=number,
                   room_type=room_type,
                   daily_rate=daily_rate,
                   tat_seconds=settings.TAT_DEFAULT_SECONDS)
        created += 1
    return created


def run(fresh: bool = False, beds: int = 0) -> None:
    if fresh:
        logger.warning("Dropping ALL tables (dev only)", extra={"event": "init_db"})
        Base.metadata.drop_all(bind=engine)

    create_tables(engine)

    try:
        with Session(engine) as db:
            created = seed_beds(db,
                                beds,
                                room_type=settings.SEED_ROOM_TYPE,
                                daily_rate=settings.SEED_DAILY_RATE)
            total = db.scalar(select(func.count()).select_from(IpdBed))
            logger.info("beds seeded: %d new, %d total", created, total,
                        extra={"event": "init_db"})
    except SQLAlchemyError as e:
        logger.error("Seeding failed: %s", e, extra={"event": "init_db"})
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Initialize DB (create tables, seed bed inventory).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    parser.add_argument(
        "--beds",
        type=int,
        default=settings.SEED_BEDS,
        help="Number of beds B1..BN to make sure exist.",
    )
    args = parser.parse_args()
    configure_logging(settings.LOG_LEVEL)
    run(fresh=args.fresh, beds=args.beds)
