from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from app.api.deps import get_bed_service
from app.schemas.ipd import (
    AdmissionOut,
    AdmitIn,
    BedOut,
    ConsistencyIssueOut,
    ConsistencyReportOut,
    DischargeIn,
    FormFlagIn,
    TodayStatsOut,
)
from app.services.ipd_bed_service import BedAdmissionService

router = APIRouter()

# ---------------- Bed board ----------------


@router.get("/beds", response_model=List[BedOut])
def list_beds(svc: BedAdmissionService = Depends(get_bed_service)):
    now = svc.clock()
    return [BedOut.from_bed(b, now) for b in svc.list_beds()]


@router.get("/beds/{bed_id}", response_model=BedOut)
def get_bed(bed_id: int, svc: BedAdmissionService = Depends(get_bed_service)):
    return BedOut.from_bed(svc.get_bed(bed_id), svc.clock())


# ---------------- Admit / Discharge ----------------


@router.post("/beds/{bed_id}/admit",
             response_model=AdmissionOut,
             status_code=status.HTTP_201_CREATED)
def admit_to_bed(bed_id: int,
                 payload: AdmitIn,
                 svc: BedAdmissionService = Depends(get_bed_service)):
    return svc.admit(bed_id,
                     payload.patient_id,
                     payload.department,
                     payload.admission_timestamp)


@router.post("/beds/{bed_id}/discharge")
def discharge_from_bed(bed_id: int,
                       payload: Optional[DischargeIn] = Body(None),
                       svc: BedAdmissionService = Depends(get_bed_service)):
    svc.discharge(bed_id, payload.discharge_timestamp if payload else None)
    return {"message": "Discharged"}


# ---------------- Clinical form flags ----------------


@router.patch("/beds/{bed_id}/forms/{form_key}", response_model=BedOut)
def update_form_flag(bed_id: int,
                     form_key: str,
                     payload: FormFlagIn,
                     svc: BedAdmissionService = Depends(get_bed_service)):
    kwargs = {}
    # omitted payload keeps what is stored; explicit null clears it
    if "payload" in payload.model_fields_set:
        kwargs["payload"] = payload.payload
    bed = svc.update_form_flag(bed_id, form_key, payload.submitted, **kwargs)
    return BedOut.from_bed(bed, svc.clock())


# ---------------- TAT ----------------


@router.post("/beds/{bed_id}/tat/start", response_model=BedOut)
def start_tat(bed_id: int, svc: BedAdmissionService = Depends(get_bed_service)):
    return BedOut.from_bed(svc.start_tat(bed_id), svc.clock())


@router.post("/beds/{bed_id}/tat/stop", response_model=BedOut)
def stop_tat(bed_id: int, svc: BedAdmissionService = Depends(get_bed_service)):
    return BedOut.from_bed(svc.stop_tat(bed_id), svc.clock())


# ---------------- Admissions ----------------


@router.get("/admissions", response_model=List[AdmissionOut])
def list_admissions(
        status: Optional[str] = None,
        patient_id: Optional[str] = None,
        bed_id: Optional[int] = None,
        limit: int = Query(300, ge=1, le=500),
        svc: BedAdmissionService = Depends(get_bed_service),
):
    return svc.list_admissions(status=status,
                               patient_id=patient_id,
                               bed_id=bed_id,
                               limit=limit)


@router.get("/admissions/{admission_id}", response_model=AdmissionOut)
def get_admission(admission_id: int,
                  svc: BedAdmissionService = Depends(get_bed_service)):
    return svc.get_admission(admission_id)


# ---------------- Operations ----------------


@router.get("/stats/today", response_model=TodayStatsOut)
def today_stats(svc: BedAdmissionService = Depends(get_bed_service)):
    return svc.today_stats()


@router.get("/consistency", response_model=ConsistencyReportOut)
def consistency_check(svc: BedAdmissionService = Depends(get_bed_service)):
    issues = svc.check_consistency()
    return ConsistencyReportOut(
        ok=not issues,
        issues=[
            ConsistencyIssueOut(kind=i.kind,
                                bed_id=i.bed_id,
                                admission_id=i.admission_id,
                                detail=i.detail) for i in issues
        ],
    )
