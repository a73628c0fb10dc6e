from __future__ import annotations
from datetime import datetime
from enum import Enum
from sqlalchemy import (Column, Integer, String, DateTime, ForeignKey, Boolean,
                        Numeric, JSON, UniqueConstraint, Index)
from sqlalchemy.orm import relationship
from app.db.base import Base

# ---------------------------------------------------------------------
# States
# ---------------------------------------------------------------------
BED_VACANT = "vacant"
BED_OCCUPIED = "occupied"

ADM_ADMITTED = "admitted"
ADM_DISCHARGED = "discharged"
ADM_ROLLED_BACK = "rolled_back"  # invalidated by compensation after a failed bed update

TAT_IDLE = "idle"
TAT_RUNNING = "running"
TAT_COMPLETED = "completed"
TAT_EXPIRED = "expired"


class FormKey(str, Enum):
    """Clinical forms whose completion is tracked per admission on the bed."""
    CONSENT_FORM = "consent_form"
    CLINICAL_RECORD = "clinical_record"
    PROGRESS_SHEET = "progress_sheet"
    NURSES_ORDERS = "nurses_orders"
    IPD_CONSENTS = "ipd_consents"


def form_columns(form_key: FormKey) -> tuple[str, str]:
    return f"{form_key.value}_submitted", f"{form_key.value}_data"


def cleared_form_fields() -> dict:
    fields = {}
    for key in FormKey:
        submitted_col, data_col = form_columns(key)
        fields[submitted_col] = False
        fields[data_col] = None
    return fields


# ---------------------------------------------------------------------
# Bed inventory
# ---------------------------------------------------------------------


class IpdBed(Base):
    __tablename__ = "ipd_beds"
    __table_args__ = (
        Index("ix_ipd_beds_state", "state"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
        },
    )

    id = Column(Integer, primary_key=True)
    bed_number = Column(String(20), unique=True, nullable=False)
    room_type = Column(String(30), default="GENERAL")
    daily_rate = Column(Numeric(12, 2), default=0)  # billing owned, read only here

    state = Column(String(20), nullable=False, default=BED_VACANT)  # vacant/occupied
    patient_id = Column(String(64), nullable=True, index=True)
    active_admission_id = Column(Integer,
                                 ForeignKey("ipd_admissions.id"),
                                 nullable=True)
    ipd_number = Column(String(32), nullable=True)
    admission_date = Column(DateTime, nullable=True)

    # TAT countdown
    tat_start_time = Column(DateTime, nullable=True)
    tat_status = Column(String(20), nullable=False, default=TAT_IDLE)
    tat_duration_seconds = Column(Integer, nullable=False, default=1800)
    tat_remaining_seconds = Column(Integer, nullable=False, default=1800)

    # Per-admission clinical documentation (see FormKey)
    consent_form_submitted = Column(Boolean, nullable=False, default=False)
    consent_form_data = Column(JSON, nullable=True)
    clinical_record_submitted = Column(Boolean, nullable=False, default=False)
    clinical_record_data = Column(JSON, nullable=True)
    progress_sheet_submitted = Column(Boolean, nullable=False, default=False)
    progress_sheet_data = Column(JSON, nullable=True)
    nurses_orders_submitted = Column(Boolean, nullable=False, default=False)
    nurses_orders_data = Column(JSON, nullable=True)
    ipd_consents_submitted = Column(Boolean, nullable=False, default=False)
    ipd_consents_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)

    active_admission = relationship("IpdAdmission",
                                    foreign_keys=[active_admission_id])

    @property
    def is_vacant(self) -> bool:
        return self.state == BED_VACANT

    def form_state(self) -> dict:
        out = {}
        for key in FormKey:
            submitted_col, data_col = form_columns(key)
            out[key.value] = {
                "submitted": bool(getattr(self, submitted_col)),
                "payload": getattr(self, data_col),
            }
        return out


# ---------------------------------------------------------------------
# Admissions
# ---------------------------------------------------------------------


class IpdAdmission(Base):
    __tablename__ = "ipd_admissions"
    __table_args__ = (
        Index("ix_ipd_admissions_bed_status", "bed_id", "status"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
        },
    )

    id = Column(Integer, primary_key=True)
    admission_number = Column(String(32), unique=True, index=True, nullable=False)
    patient_id = Column(String(64), nullable=False, index=True)
    bed_id = Column(Integer, nullable=False,
                    index=True)  # ipd_beds.id; the bed holds the FK back
    bed_number = Column(String(20), nullable=False)
    room_type = Column(String(30), default="GENERAL")
    department = Column(String(120), default="GENERAL")

    admitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    discharged_at = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False,
                    default=ADM_ADMITTED)  # admitted/discharged/rolled_back

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)


# ---------------------------------------------------------------------
# Daily admission number counter
# ---------------------------------------------------------------------


class IpdCounter(Base):
    __tablename__ = "ipd_counters"
    __table_args__ = (
        UniqueConstraint("date_key", name="uq_ipd_counters_date_key"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
        },
    )

    id = Column(Integer, primary_key=True)
    date_key = Column(String(8), nullable=False)  # YYYYMMDD
    counter = Column(Integer, nullable=False, default=0)  # last issued value
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)
