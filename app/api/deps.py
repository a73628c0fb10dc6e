# app/api/deps.py
from __future__ import annotations

from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.services.bed_events import BedChangeNotifier, get_bed_notifier
from app.services.ipd_bed_service import BedAdmissionService


# =========================================================
# DB (per request)
# =========================================================
def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_notifier() -> BedChangeNotifier:
    return get_bed_notifier()


def get_bed_service(
    db: Session = Depends(get_db),
    notifier: BedChangeNotifier = Depends(get_notifier),
) -> BedAdmissionService:
    return BedAdmissionService(db, notifier)
