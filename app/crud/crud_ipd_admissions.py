# FILE: app/crud/crud_ipd_admissions.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.ipd import ADM_ADMITTED, IpdAdmission
from app.utils.timezone import utcnow


def create_admission(
    db: Session,
    *,
    admission_number: str,
    patient_id: str,
    bed_id: int,
    bed_number: str,
    room_type: Optional[str],
    department: str,
    admitted_at: datetime,
) -> IpdAdmission:
    adm = IpdAdmission(admission_number=admission_number,
                       patient_id=patient_id,
                       bed_id=bed_id,
                       bed_number=bed_number,
                       room_type=room_type,
                       department=department,
                       admitted_at=admitted_at,
                       status=ADM_ADMITTED)
    db.add(adm)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(adm)
    return adm


def get_admission(db: Session, admission_id: int) -> Optional[IpdAdmission]:
    return db.get(IpdAdmission, admission_id, populate_existing=True)


def list_admissions(
    db: Session,
    *,
    status: Optional[str] = None,
    patient_id: Optional[str] = None,
    bed_id: Optional[int] = None,
    limit: int = 300,
) -> List[IpdAdmission]:
    stmt = select(IpdAdmission)
    if status:
        stmt = stmt.where(IpdAdmission.status == status)
    if patient_id:
        stmt = stmt.where(IpdAdmission.patient_id == patient_id)
    if bed_id:
        stmt = stmt.where(IpdAdmission.bed_id == bed_id)
    stmt = stmt.order_by(IpdAdmission.id.desc()).limit(min(limit, 500))
    return list(db.scalars(stmt.execution_options(populate_existing=True)))


def set_admission_status(
    db: Session,
    admission_id: int,
    status: str,
    *,
    expect_status: Optional[str] = None,
    discharged_at: Optional[datetime] = None,
    clear_discharged_at: bool = False,
) -> bool:
    """
    Move one admission to `status` (only if it is still `expect_status`
    when given). Returns False when nothing matched.
    """
    values = dict(status=status, updated_at=utcnow())
    if discharged_at is not None:
        values["discharged_at"] = discharged_at
    elif clear_discharged_at:
        values["discharged_at"] = None

    stmt = update(IpdAdmission).where(IpdAdmission.id == admission_id)
    if expect_status is not None:
        stmt = stmt.where(IpdAdmission.status == expect_status)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    try:
        matched = db.execute(stmt).rowcount
        if not matched:
            db.rollback()
            return False
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True
