# FILE: app/schemas/ipd.py
from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.ipd import IpdBed
from app.services.ipd_tat import derive_bed_tat

BedState = Literal["vacant", "occupied"]
TatStatus = Literal["idle", "running", "completed", "expired"]
AdmissionStatus = Literal["admitted", "discharged", "rolled_back"]

# =====================================================================
# ------------------------------- Beds --------------------------------
# =====================================================================


class FormStateOut(BaseModel):
    submitted: bool = False
    payload: Optional[Any] = None


class BedOut(BaseModel):
    id: int
    bed_number: str
    room_type: Optional[str] = None
    daily_rate: Optional[Decimal] = None

    state: BedState
    patient_id: Optional[str] = None
    active_admission_id: Optional[int] = None
    ipd_number: Optional[str] = None
    admission_date: Optional[datetime] = None

    tat_start_time: Optional[datetime] = None
    tat_status: TatStatus = "idle"
    tat_duration_seconds: int
    tat_remaining_seconds: int

    forms: Dict[str, FormStateOut] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_bed(cls, bed: IpdBed, now: datetime) -> "BedOut":
        """TAT fields are the lazily derived view at `now`, not the raw columns."""
        tat = derive_bed_tat(bed, now)
        return cls(
            id=bed.id,
            bed_number=bed.bed_number,
            room_type=bed.room_type,
            daily_rate=bed.daily_rate,
            state=bed.state,
            patient_id=bed.patient_id,
            active_admission_id=bed.active_admission_id,
            ipd_number=bed.ipd_number,
            admission_date=bed.admission_date,
            tat_start_time=bed.tat_start_time,
            tat_status=tat.status,
            tat_duration_seconds=int(bed.tat_duration_seconds or 0),
            tat_remaining_seconds=tat.remaining_seconds,
            forms={
                k: FormStateOut(**v)
                for k, v in bed.form_state().items()
            },
            updated_at=bed.updated_at,
        )


class FormFlagIn(BaseModel):
    submitted: bool
    payload: Optional[Any] = None


# =====================================================================
# ---------------------------- Admissions ------------------------------
# =====================================================================


class AdmitIn(BaseModel):
    patient_id: str = Field(..., min_length=1, max_length=64)
    department: str = Field("GENERAL", min_length=1, max_length=120)
    admission_timestamp: Optional[datetime] = None

    @field_validator("patient_id", "department")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class DischargeIn(BaseModel):
    discharge_timestamp: Optional[datetime] = None


class AdmissionOut(BaseModel):
    id: int
    admission_number: str
    patient_id: str
    bed_id: int
    bed_number: str
    room_type: Optional[str] = None
    department: Optional[str] = None
    admitted_at: datetime
    discharged_at: Optional[datetime] = None
    status: AdmissionStatus

    model_config = ConfigDict(from_attributes=True)


# =====================================================================
# ---------------------------- Operations ------------------------------
# =====================================================================


class TodayStatsOut(BaseModel):
    date_key: str
    count: int
    last_ipd_number: Optional[str] = None


class ConsistencyIssueOut(BaseModel):
    kind: str
    bed_id: Optional[int] = None
    admission_id: Optional[int] = None
    detail: str = ""


class ConsistencyReportOut(BaseModel):
    ok: bool
    issues: List[ConsistencyIssueOut] = Field(default_factory=list)
