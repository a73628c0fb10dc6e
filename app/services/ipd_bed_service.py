# FILE: app/services/ipd_bed_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (AdmissionNotFound, BedNotAvailable, BedNotFound,
                             BedNotOccupied, BedReloadFailed,
                             PartialAdmissionFailure, TatStateError,
                             UnknownFormKey)
from app.crud.crud_ipd_admissions import (create_admission, get_admission,
                                          list_admissions, set_admission_status)
from app.crud.crud_ipd_beds import (get_bed, list_beds, occupy_bed,
                                    update_bed_fields, vacate_bed)
from app.models.ipd import (ADM_ADMITTED, ADM_DISCHARGED, ADM_ROLLED_BACK,
                            BED_OCCUPIED, BED_VACANT, TAT_COMPLETED,
                            TAT_EXPIRED, TAT_IDLE, TAT_RUNNING, FormKey,
                            IpdAdmission, IpdBed, form_columns)
from app.services.audit_logger import log_audit
from app.services.bed_events import (BED_FORM_UPDATED, BED_TAT_UPDATED,
                                     BedChangeNotifier)
from app.services.ipd_number_series import (next_admission_number, peek_counter,
                                            render_admission_number)
from app.services.ipd_tat import derive_bed_tat
from app.utils.timezone import hospital_date_key, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

_KEEP = object()
_UNREADABLE = object()


@dataclass(frozen=True)
class ConsistencyIssue:
    kind: str
    bed_id: Optional[int] = None
    admission_id: Optional[int] = None
    detail: str = ""


class BedAdmissionService:
    """
    Coordinates the bed board: admission numbers, admission records and
    bed occupancy.

    Every store call is its own short transaction; no lock is held across
    the admit / discharge steps. Cross-record consistency comes from the
    step ordering, conditional bed updates and compensation of the
    admission record when the bed update fails. Nothing is retried here,
    retries belong to the caller.
    """

    def __init__(
        self,
        db: Session,
        notifier: Optional[BedChangeNotifier] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        tat_seconds: Optional[int] = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.clock = clock
        self.tat_seconds = tat_seconds or settings.TAT_DEFAULT_SECONDS

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_beds(self) -> List[IpdBed]:
        return list_beds(self.db)

    def get_bed(self, bed_id: int) -> IpdBed:
        bed = get_bed(self.db, bed_id)
        if bed is None:
            raise BedNotFound(bed_id)
        return bed

    def get_admission(self, admission_id: int) -> IpdAdmission:
        adm = get_admission(self.db, admission_id)
        if adm is None:
            raise AdmissionNotFound(admission_id)
        return adm

    def list_admissions(self,
                        *,
                        status: Optional[str] = None,
                        patient_id: Optional[str] = None,
                        bed_id: Optional[int] = None,
                        limit: int = 300) -> List[IpdAdmission]:
        return list_admissions(self.db,
                               status=status,
                               patient_id=patient_id,
                               bed_id=bed_id,
                               limit=limit)

    def today_stats(self) -> dict:
        day_key = hospital_date_key(self.clock())
        count = peek_counter(self.db, day_key)
        return {
            "date_key": day_key,
            "count": count,
            "last_ipd_number":
            render_admission_number(day_key, count) if count else None,
        }

    # ------------------------------------------------------------------
    # Admit
    # ------------------------------------------------------------------
    def admit(
        self,
        bed_id: int,
        patient_id: str,
        department: str,
        admission_timestamp: Optional[datetime] = None,
    ) -> IpdAdmission:
        """
        1. bed must be vacant                     -> BedNotAvailable
        2. issue today's admission number         -> SequenceUnavailable
        3. write the ADMITTED admission record
        4. occupy the bed, conditioned on it still being vacant
        5. bed update lost / failed -> roll the admission back
        """
        bed = self.get_bed(bed_id)
        if not bed.is_vacant:
            raise BedNotAvailable(bed_id)
        bed_number, room_type = bed.bed_number, bed.room_type

        admitted_at = to_naive_utc(admission_timestamp) or self.clock()
        # numbered by the day it is issued, whatever the recorded admission time
        number = next_admission_number(self.db, hospital_date_key(self.clock()))

        adm = create_admission(self.db,
                               admission_number=number,
                               patient_id=patient_id,
                               bed_id=bed_id,
                               bed_number=bed_number,
                               room_type=room_type,
                               department=department,
                               admitted_at=admitted_at)
        adm_id = adm.id

        try:
            occupied = occupy_bed(self.db,
                                  bed_id,
                                  patient_id=patient_id,
                                  admission_id=adm_id,
                                  ipd_number=number,
                                  admitted_at=admitted_at,
                                  tat_seconds=self.tat_seconds,
                                  notifier=self.notifier) is not None
        except BedReloadFailed:
            # occupied and committed, only the re-read failed
            occupied = True
        except SQLAlchemyError as exc:
            holder = self._bed_holder(bed_id)
            if holder == adm_id:
                # the write landed before the error surfaced
                logger.warning("bed update reported %s but holds admission %s",
                               exc.__class__.__name__,
                               adm_id,
                               extra={"event": "admit_recovered", "bed_id": bed_id})
                occupied = True
            else:
                # an unreadable bed may already hold the admission: leave it
                compensated = (holder is not _UNREADABLE
                               and self._roll_back_admission(adm_id, bed_id))
                logger.error(
                    "bed update failed after admission %s (%s) was written; compensated=%s",
                    adm_id, number, compensated,
                    exc_info=exc,
                    extra={"event": "partial_admission", "bed_id": bed_id},
                )
                raise PartialAdmissionFailure(bed_id, adm_id, compensated,
                                              exc) from exc

        if not occupied:
            # another admitter took the bed between the check and the write
            if not self._roll_back_admission(adm_id, bed_id):
                logger.error(
                    "lost bed race and could not roll back admission %s",
                    adm_id,
                    extra={"event": "partial_admission", "bed_id": bed_id},
                )
                raise PartialAdmissionFailure(bed_id, adm_id, False)
            raise BedNotAvailable(bed_id)

        logger.info("admitted patient %s as %s",
                    patient_id,
                    number,
                    extra={"event": "admit", "bed_id": bed_id})
        log_audit(self.db,
                  action="ADMIT",
                  bed_id=bed_id,
                  admission_id=adm_id,
                  patient_id=patient_id,
                  new_values={
                      "admission_number": number,
                      "state": BED_OCCUPIED,
                  })
        return self.get_admission(adm_id)

    def _roll_back_admission(self, admission_id: int, bed_id: int) -> bool:
        """Best effort: ADMITTED -> ROLLED_BACK. Returns whether it stuck."""
        try:
            done = set_admission_status(self.db,
                                        admission_id,
                                        ADM_ROLLED_BACK,
                                        expect_status=ADM_ADMITTED)
        except SQLAlchemyError as exc:
            logger.error("compensation of admission %s failed: %s",
                         admission_id,
                         exc,
                         extra={"event": "compensation_failed", "bed_id": bed_id})
            return False
        if done:
            logger.warning("admission %s rolled back",
                           admission_id,
                           extra={"event": "compensated", "bed_id": bed_id})
            log_audit(self.db,
                      action="COMPENSATE",
                      bed_id=bed_id,
                      admission_id=admission_id,
                      old_values={"status": ADM_ADMITTED},
                      new_values={"status": ADM_ROLLED_BACK})
        return done

    def _bed_holder(self, bed_id: int) -> Any:
        """
        Admission id the bed currently references (None when vacant), read
        fresh after a failed bed write. _UNREADABLE if the store is still down.
        """
        try:
            bed = get_bed(self.db, bed_id)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("bed %s unreadable after failed write: %s",
                         bed_id,
                         exc,
                         extra={"event": "bed_unreadable", "bed_id": bed_id})
            return _UNREADABLE
        return bed.active_admission_id if bed is not None else None

    # ------------------------------------------------------------------
    # Discharge
    # ------------------------------------------------------------------
    def discharge(self,
                  bed_id: int,
                  discharge_timestamp: Optional[datetime] = None) -> None:
        """
        Close the admission first, then free the bed, so a VACANT bed is
        never seen with its last admission still ADMITTED.
        """
        bed = self.get_bed(bed_id)
        if bed.state != BED_OCCUPIED or bed.active_admission_id is None:
            raise BedNotOccupied(bed_id)
        adm_id, patient_id = bed.active_admission_id, bed.patient_id
        discharged_at = to_naive_utc(discharge_timestamp) or self.clock()

        if not set_admission_status(self.db,
                                    adm_id,
                                    ADM_DISCHARGED,
                                    expect_status=ADM_ADMITTED,
                                    discharged_at=discharged_at):
            # a concurrent discharge got there first
            raise BedNotOccupied(bed_id)

        try:
            freed = vacate_bed(self.db,
                               bed_id,
                               admission_id=adm_id,
                               tat_seconds=self.tat_seconds,
                               notifier=self.notifier) is not None
        except BedReloadFailed:
            # vacated and committed, only the re-read failed
            freed = True
        except SQLAlchemyError as exc:
            holder = self._bed_holder(bed_id)
            if holder == adm_id:
                self._reopen_admission(adm_id, bed_id)
                raise
            if holder is _UNREADABLE:
                logger.error(
                    "bed release failed and bed is unreadable; admission %s stays DISCHARGED",
                    adm_id,
                    extra={"event": "compensation_failed", "bed_id": bed_id})
                raise
            # the release landed before the error surfaced
            logger.warning("bed release reported %s but bed no longer holds admission %s",
                           exc.__class__.__name__,
                           adm_id,
                           extra={"event": "discharge_recovered", "bed_id": bed_id})
            freed = True

        if not freed:
            logger.warning("bed no longer held admission %s at release",
                           adm_id,
                           extra={"event": "discharge_race", "bed_id": bed_id})
            raise BedNotOccupied(bed_id)

        logger.info("discharged admission %s",
                    adm_id,
                    extra={"event": "discharge", "bed_id": bed_id})
        log_audit(self.db,
                  action="DISCHARGE",
                  bed_id=bed_id,
                  admission_id=adm_id,
                  patient_id=patient_id,
                  old_values={"state": BED_OCCUPIED},
                  new_values={"state": BED_VACANT})

    def _reopen_admission(self, admission_id: int, bed_id: int) -> None:
        try:
            set_admission_status(self.db,
                                 admission_id,
                                 ADM_ADMITTED,
                                 expect_status=ADM_DISCHARGED,
                                 clear_discharged_at=True)
        except SQLAlchemyError as exc:
            logger.error(
                "bed release failed and admission %s stays DISCHARGED: %s",
                admission_id,
                exc,
                extra={"event": "compensation_failed", "bed_id": bed_id})

    # ------------------------------------------------------------------
    # Clinical form flags
    # ------------------------------------------------------------------
    def update_form_flag(self,
                         bed_id: int,
                         form_key: str,
                         submitted: bool,
                         payload: Any = _KEEP) -> IpdBed:
        """
        Record completion of one clinical form for the current admission.
        The payload is only written when given; None clears it.
        """
        try:
            key = FormKey(form_key)
        except ValueError:
            raise UnknownFormKey(form_key) from None

        bed = self.get_bed(bed_id)
        if bed.state != BED_OCCUPIED:
            raise BedNotOccupied(bed_id)

        submitted_col, data_col = form_columns(key)
        fields = {submitted_col: bool(submitted)}
        if payload is not _KEEP:
            fields[data_col] = payload

        updated = update_bed_fields(self.db,
                                    bed_id,
                                    fields,
                                    expect={
                                        "state": BED_OCCUPIED,
                                        "active_admission_id":
                                        bed.active_admission_id,
                                    },
                                    kind=BED_FORM_UPDATED,
                                    notifier=self.notifier)
        if updated is None:
            raise BedNotOccupied(bed_id)

        log_audit(self.db,
                  action="FORM_UPDATE",
                  bed_id=bed_id,
                  admission_id=updated.active_admission_id,
                  new_values={
                      "form_key": key.value,
                      "submitted": bool(submitted)
                  })
        return updated

    # ------------------------------------------------------------------
    # TAT
    # ------------------------------------------------------------------
    def start_tat(self, bed_id: int) -> IpdBed:
        bed = self.get_bed(bed_id)
        if bed.state != BED_OCCUPIED:
            raise BedNotOccupied(bed_id)
        tat = derive_bed_tat(bed, self.clock())
        if tat.status != TAT_IDLE:
            raise TatStateError(bed_id, f"TAT is {tat.status}, not idle")

        duration = int(bed.tat_duration_seconds or self.tat_seconds)
        return self._set_tat(bed,
                             dict(tat_status=TAT_RUNNING,
                                  tat_start_time=self.clock(),
                                  tat_remaining_seconds=duration),
                             action="TAT_START")

    def stop_tat(self, bed_id: int) -> IpdBed:
        bed = self.get_bed(bed_id)
        tat = derive_bed_tat(bed, self.clock())

        if tat.status == TAT_EXPIRED and bed.tat_status == TAT_RUNNING:
            self._set_tat(bed,
                          dict(tat_status=TAT_EXPIRED,
                               tat_remaining_seconds=0),
                          action="TAT_STOP")
            raise TatStateError(bed_id, "TAT already expired")
        if tat.status != TAT_RUNNING:
            raise TatStateError(bed_id, f"TAT is {tat.status}, not running")

        return self._set_tat(bed,
                             dict(tat_status=TAT_COMPLETED,
                                  tat_remaining_seconds=tat.remaining_seconds),
                             action="TAT_STOP")

    def _set_tat(self, bed: IpdBed, fields: dict, *, action: str) -> IpdBed:
        bed_id, previous = bed.id, bed.tat_status
        updated = update_bed_fields(self.db,
                                    bed_id,
                                    fields,
                                    expect={
                                        "state": BED_OCCUPIED,
                                        "active_admission_id":
                                        bed.active_admission_id,
                                        "tat_status": previous,
                                    },
                                    kind=BED_TAT_UPDATED,
                                    notifier=self.notifier)
        if updated is None:
            raise TatStateError(bed_id, "bed changed concurrently, reload")
        log_audit(self.db,
                  action=action,
                  bed_id=bed_id,
                  admission_id=updated.active_admission_id,
                  old_values={"tat_status": previous},
                  new_values={"tat_status": fields["tat_status"]})
        return updated

    # ------------------------------------------------------------------
    # Operator consistency check
    # ------------------------------------------------------------------
    def check_consistency(self) -> List[ConsistencyIssue]:
        """
        Every OCCUPIED bed must reference an ADMITTED admission for the
        same bed and patient, and every ADMITTED admission must be
        referenced by an OCCUPIED bed.
        """
        issues: List[ConsistencyIssue] = []
        referenced = set()

        for bed in list_beds(self.db):
            if bed.state != BED_OCCUPIED:
                if bed.active_admission_id is not None or bed.patient_id:
                    issues.append(
                        ConsistencyIssue("vacant_bed_with_admission", bed.id,
                                         bed.active_admission_id))
                continue

            if bed.active_admission_id is None or not bed.patient_id:
                issues.append(
                    ConsistencyIssue("occupied_bed_without_admission", bed.id,
                                     bed.active_admission_id))
                continue

            referenced.add(bed.active_admission_id)
            adm = get_admission(self.db, bed.active_admission_id)
            if adm is None:
                issues.append(
                    ConsistencyIssue("admission_missing", bed.id,
                                     bed.active_admission_id))
            elif adm.status != ADM_ADMITTED:
                issues.append(
                    ConsistencyIssue("admission_not_active", bed.id, adm.id,
                                     f"status={adm.status}"))
            elif adm.bed_id != bed.id:
                issues.append(
                    ConsistencyIssue("admission_bed_mismatch", bed.id, adm.id,
                                     f"admission bed_id={adm.bed_id}"))
            elif adm.patient_id != bed.patient_id:
                issues.append(
                    ConsistencyIssue("admission_patient_mismatch", bed.id,
                                     adm.id))

        admitted = self.db.scalars(
            select(IpdAdmission).where(IpdAdmission.status == ADM_ADMITTED))
        for adm in admitted:
            if adm.id not in referenced:
                issues.append(
                    ConsistencyIssue("orphan_admission", adm.bed_id, adm.id,
                                     adm.admission_number))

        if issues:
            logger.warning("consistency check found %d issue(s)",
                           len(issues),
                           extra={"event": "consistency"})
        return issues
