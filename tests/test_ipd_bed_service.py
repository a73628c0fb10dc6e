import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import (BedNotAvailable, BedNotFound, BedNotOccupied,
                             PartialAdmissionFailure, SequenceUnavailable,
                             TatStateError, UnknownFormKey)
from app.crud import crud_ipd_beds
from app.models.audit import IpdAuditLog
from app.models.ipd import IpdAdmission, IpdCounter
from app.services import ipd_bed_service
from app.services.ipd_bed_service import BedAdmissionService


def _store_down(*args, **kwargs):
    raise OperationalError("UPDATE", {}, Exception("database unreachable"))


def _reload_down(db, bed_id):
    raise OperationalError("SELECT", {}, Exception("connection reset"))


def _commit_then_fail(write):
    """Wrap a bed write so it commits and then reports a store error."""

    def _wrapped(*args, **kwargs):
        write(*args, **kwargs)
        raise OperationalError("COMMIT", {}, Exception("connection lost"))

    return _wrapped


def _run_together(*calls):
    """Start every call at the same moment on its own thread; return outcomes in order."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def _run(i, call):
        barrier.wait()
        try:
            call()
            outcomes[i] = "ok"
        except BedNotOccupied:
            outcomes[i] = "not_occupied"

    threads = [threading.Thread(target=_run, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


# ---------------- admit ----------------


def test_first_two_admissions_of_the_day(service, beds):
    first = service.admit(beds["B1"], "P1", "GENERAL")
    second = service.admit(beds["B2"], "P2", "GENERAL")

    assert first.admission_number == "IPD-20240301-001"
    assert second.admission_number == "IPD-20240301-002"
    assert first.status == "admitted"

    bed = service.get_bed(beds["B1"])
    assert bed.state == "occupied"
    assert bed.patient_id == "P1"
    assert bed.active_admission_id == first.id
    assert bed.ipd_number == "IPD-20240301-001"
    assert bed.admission_date == datetime(2024, 3, 1, 9, 0, 0)
    assert bed.tat_status == "idle"


def test_back_dated_admission_is_numbered_on_the_current_day(service, beds, db):
    ts = datetime(2024, 2, 29, 23, 59, tzinfo=timezone.utc)
    adm = service.admit(beds["B1"], "P1", "GENERAL", ts)
    assert adm.admission_number == "IPD-20240301-001"
    assert adm.admitted_at == datetime(2024, 2, 29, 23, 59)
    assert [c.date_key for c in db.query(IpdCounter)] == ["20240301"]


def test_future_dated_admission_creates_no_future_counter(service, beds, db):
    ts = datetime(2024, 3, 5, 8, 0, tzinfo=timezone.utc)
    adm = service.admit(beds["B1"], "P1", "GENERAL", ts)
    assert adm.admission_number == "IPD-20240301-001"
    assert [c.date_key for c in db.query(IpdCounter)] == ["20240301"]


def test_admit_to_occupied_bed_is_rejected(service, beds, db):
    service.admit(beds["B1"], "P1", "GENERAL")

    with pytest.raises(BedNotAvailable) as info:
        service.admit(beds["B1"], "P2", "GENERAL")

    assert info.value.code == "BED_NOT_AVAILABLE"
    assert db.query(IpdAdmission).count() == 1
    # no number burnt for a rejected admission
    assert db.query(IpdCounter).one().counter == 1
    assert service.get_bed(beds["B1"]).patient_id == "P1"


def test_admit_unknown_bed(service, beds):
    with pytest.raises(BedNotFound):
        service.admit(9999, "P1", "GENERAL")


def test_admit_publishes_bed_change(service, beds, notifier):
    seen = []
    notifier.subscribe(seen.append)
    service.admit(beds["B3"], "P3", "GENERAL")

    assert len(seen) == 1
    assert seen[0].kind == "bed.admitted"
    assert seen[0].bed_id == beds["B3"]
    assert seen[0].bed["state"] == "occupied"
    assert seen[0].bed["patient_id"] == "P3"


def test_sequence_failure_leaves_nothing_behind(service, beds, db, engine):
    IpdCounter.__table__.drop(bind=engine)

    with pytest.raises(SequenceUnavailable):
        service.admit(beds["B1"], "P1", "GENERAL")

    assert db.query(IpdAdmission).count() == 0
    assert service.get_bed(beds["B1"]).state == "vacant"


def test_failed_bed_update_rolls_admission_back(service, beds, db, monkeypatch):
    monkeypatch.setattr(ipd_bed_service, "occupy_bed", _store_down)

    with pytest.raises(PartialAdmissionFailure) as info:
        service.admit(beds["B1"], "P1", "GENERAL")

    assert info.value.compensated is True
    adm = service.get_admission(info.value.admission_id)
    assert adm.status == "rolled_back"
    assert service.get_bed(beds["B1"]).state == "vacant"
    assert service.check_consistency() == []
    actions = [a.action for a in db.query(IpdAuditLog)]
    assert "COMPENSATE" in actions


def test_uncompensated_failure_shows_up_in_consistency_check(service, beds, monkeypatch):
    monkeypatch.setattr(ipd_bed_service, "occupy_bed", _store_down)
    monkeypatch.setattr(ipd_bed_service, "set_admission_status", _store_down)

    with pytest.raises(PartialAdmissionFailure) as info:
        service.admit(beds["B1"], "P1", "GENERAL")

    assert info.value.compensated is False
    issues = service.check_consistency()
    assert [i.kind for i in issues] == ["orphan_admission"]
    assert issues[0].admission_id == info.value.admission_id


def test_bed_reload_failure_after_occupy_keeps_admission(service, beds, notifier, monkeypatch):
    seen = []
    notifier.subscribe(seen.append)
    monkeypatch.setattr(crud_ipd_beds, "get_bed", _reload_down)

    adm = service.admit(beds["B1"], "P1", "GENERAL")

    assert adm.status == "admitted"
    assert service.get_bed(beds["B1"]).active_admission_id == adm.id
    assert service.check_consistency() == []
    # the committed change could not be reloaded, so nothing was published
    assert seen == []


def test_occupy_error_after_commit_is_not_compensated(service, beds, monkeypatch):
    monkeypatch.setattr(ipd_bed_service, "occupy_bed",
                        _commit_then_fail(ipd_bed_service.occupy_bed))

    adm = service.admit(beds["B1"], "P1", "GENERAL")

    assert service.get_admission(adm.id).status == "admitted"
    assert service.get_bed(beds["B1"]).state == "occupied"
    assert service.check_consistency() == []


def test_unreadable_bed_after_failed_occupy_is_left_for_reconciliation(service, beds, monkeypatch):
    store = {"down": False}
    real_get_bed = ipd_bed_service.get_bed

    def _get_bed(db, bed_id):
        if store["down"]:
            raise OperationalError("SELECT", {}, Exception("database unreachable"))
        return real_get_bed(db, bed_id)

    def _occupy(*args, **kwargs):
        store["down"] = True
        raise OperationalError("UPDATE", {}, Exception("database unreachable"))

    monkeypatch.setattr(ipd_bed_service, "get_bed", _get_bed)
    monkeypatch.setattr(ipd_bed_service, "occupy_bed", _occupy)

    with pytest.raises(PartialAdmissionFailure) as info:
        service.admit(beds["B1"], "P1", "GENERAL")

    assert info.value.compensated is False
    store["down"] = False
    assert service.get_admission(info.value.admission_id).status == "admitted"


def test_concurrent_admits_to_one_bed(session_factory, beds, notifier, clock):
    barrier = threading.Barrier(2)
    results, lock = [], threading.Lock()

    def _admit(patient_id):
        session = session_factory()
        svc = BedAdmissionService(session, notifier, clock=clock)
        try:
            barrier.wait()
            adm = svc.admit(beds["B1"], patient_id, "GENERAL")
            outcome = ("ok", adm.patient_id)
        except BedNotAvailable:
            outcome = ("taken", patient_id)
        finally:
            session.close()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_admit, args=(p,)) for p in ("PA", "PB")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(r[0] for r in results) == ["ok", "taken"]
    winner = next(r[1] for r in results if r[0] == "ok")

    session = session_factory()
    try:
        svc = BedAdmissionService(session, notifier, clock=clock)
        bed = svc.get_bed(beds["B1"])
        assert bed.patient_id == winner
        admitted = svc.list_admissions(status="admitted")
        assert [a.patient_id for a in admitted] == [winner]
        assert svc.check_consistency() == []
    finally:
        session.close()


# ---------------- discharge ----------------


def test_discharge_clears_bed_and_closes_admission(service, beds, clock):
    adm = service.admit(beds["B1"], "P1", "GENERAL")
    service.update_form_flag(beds["B1"], "consent_form", True, {"signed": "yes"})
    service.start_tat(beds["B1"])
    clock.advance(3600)

    service.discharge(beds["B1"])

    bed = service.get_bed(beds["B1"])
    assert bed.state == "vacant"
    assert bed.patient_id is None
    assert bed.active_admission_id is None
    assert bed.ipd_number is None
    assert bed.admission_date is None
    assert bed.tat_status == "idle"
    assert bed.tat_start_time is None
    assert all(not f["submitted"] and f["payload"] is None
               for f in bed.form_state().values())

    closed = service.get_admission(adm.id)
    assert closed.status == "discharged"
    assert closed.discharged_at == datetime(2024, 3, 1, 10, 0, 0)
    assert service.check_consistency() == []


def test_ward_morning_on_bed_b5(service, beds, clock):
    clock.now = datetime(2024, 3, 1, 10, 0, 0)
    first = service.admit(beds["B5"], "P", "GENERAL")
    assert first.admission_number == "IPD-20240301-001"
    b5 = service.get_bed(beds["B5"])
    assert (b5.state, b5.patient_id, b5.active_admission_id) == ("occupied", "P", first.id)

    second = service.admit(beds["B2"], "Q", "GENERAL")
    assert second.admission_number == "IPD-20240301-002"

    service.update_form_flag(beds["B5"], "ipd_consents", True)
    service.discharge(beds["B5"])
    b5 = service.get_bed(beds["B5"])
    assert b5.state == "vacant"
    assert service.get_admission(first.id).status == "discharged"
    assert not any(f["submitted"] for f in b5.form_state().values())
    assert service.get_bed(beds["B2"]).patient_id == "Q"


def test_discharge_vacant_bed(service, beds):
    with pytest.raises(BedNotOccupied):
        service.discharge(beds["B2"])


def test_bed_is_reusable_after_discharge(service, beds):
    service.admit(beds["B1"], "P1", "GENERAL")
    service.discharge(beds["B1"])
    again = service.admit(beds["B1"], "P2", "GENERAL")
    assert again.admission_number == "IPD-20240301-002"
    assert service.get_bed(beds["B1"]).patient_id == "P2"


def test_failed_bed_release_reopens_admission(service, beds, monkeypatch):
    adm = service.admit(beds["B1"], "P1", "GENERAL")
    monkeypatch.setattr(ipd_bed_service, "vacate_bed", _store_down)

    with pytest.raises(OperationalError):
        service.discharge(beds["B1"])

    assert service.get_admission(adm.id).status == "admitted"
    assert service.get_admission(adm.id).discharged_at is None
    assert service.get_bed(beds["B1"]).state == "occupied"
    assert service.check_consistency() == []


def test_bed_reload_failure_after_release_keeps_discharge(service, beds, monkeypatch):
    adm = service.admit(beds["B1"], "P1", "GENERAL")
    monkeypatch.setattr(crud_ipd_beds, "get_bed", _reload_down)

    service.discharge(beds["B1"])

    assert service.get_admission(adm.id).status == "discharged"
    assert service.get_bed(beds["B1"]).state == "vacant"
    assert service.check_consistency() == []


def test_release_error_after_commit_does_not_reopen(service, beds, monkeypatch):
    adm = service.admit(beds["B1"], "P1", "GENERAL")
    monkeypatch.setattr(ipd_bed_service, "vacate_bed",
                        _commit_then_fail(ipd_bed_service.vacate_bed))

    service.discharge(beds["B1"])

    assert service.get_admission(adm.id).status == "discharged"
    assert service.get_bed(beds["B1"]).state == "vacant"
    assert service.check_consistency() == []


def _in_own_session(session_factory, notifier, clock, action):
    """A call that runs `action(service)` on a fresh session, as a second request would."""

    def _call():
        session = session_factory()
        try:
            action(BedAdmissionService(session, notifier, clock=clock))
        finally:
            session.close()

    return _call


def test_concurrent_discharges_of_one_bed(service, session_factory, beds, notifier, clock):
    adm = service.admit(beds["B1"], "P1", "GENERAL")
    discharge = _in_own_session(session_factory, notifier, clock,
                                lambda svc: svc.discharge(beds["B1"]))

    outcomes = _run_together(discharge, discharge)

    assert sorted(outcomes) == ["not_occupied", "ok"]
    assert service.get_admission(adm.id).status == "discharged"
    assert service.get_bed(beds["B1"]).state == "vacant"
    assert service.check_consistency() == []


def test_discharge_racing_form_update(service, session_factory, beds, notifier, clock):
    service.admit(beds["B1"], "P1", "GENERAL")
    discharge = _in_own_session(session_factory, notifier, clock,
                                lambda svc: svc.discharge(beds["B1"]))
    form_update = _in_own_session(
        session_factory, notifier, clock,
        lambda svc: svc.update_form_flag(beds["B1"], "nurses_orders", True, {"by": "N1"}))

    discharged, updated = _run_together(discharge, form_update)

    assert discharged == "ok"
    assert updated in ("ok", "not_occupied")
    bed = service.get_bed(beds["B1"])
    assert bed.state == "vacant"
    # a form written before the release is cleared by it, one after it is refused
    assert all(not f["submitted"] and f["payload"] is None
               for f in bed.form_state().values())
    assert service.check_consistency() == []


# ---------------- forms ----------------


def test_form_flag_update(service, beds, notifier):
    service.admit(beds["B1"], "P1", "GENERAL")
    seen = []
    notifier.subscribe(seen.append)

    bed = service.update_form_flag(beds["B1"], "progress_sheet", True, {"day": 1})
    assert bed.progress_sheet_submitted is True
    assert bed.progress_sheet_data == {"day": 1}
    assert bed.consent_form_submitted is False
    assert seen[-1].kind == "bed.form_updated"

    # omitted payload keeps what is stored, None clears it
    bed = service.update_form_flag(beds["B1"], "progress_sheet", False)
    assert bed.progress_sheet_submitted is False
    assert bed.progress_sheet_data == {"day": 1}
    bed = service.update_form_flag(beds["B1"], "progress_sheet", False, None)
    assert bed.progress_sheet_data is None


def test_form_flag_unknown_key(service, beds):
    service.admit(beds["B1"], "P1", "GENERAL")
    with pytest.raises(UnknownFormKey):
        service.update_form_flag(beds["B1"], "discharge_summary", True)


def test_form_flag_needs_occupied_bed(service, beds):
    with pytest.raises(BedNotOccupied):
        service.update_form_flag(beds["B1"], "consent_form", True)


# ---------------- TAT ----------------


def test_tat_start_and_stop(service, beds, clock):
    service.admit(beds["B1"], "P1", "GENERAL")
    bed = service.start_tat(beds["B1"])
    assert bed.tat_status == "running"
    assert bed.tat_start_time == clock.now

    clock.advance(600)
    bed = service.stop_tat(beds["B1"])
    assert bed.tat_status == "completed"
    assert bed.tat_remaining_seconds == 1200


def test_tat_cannot_start_twice(service, beds):
    service.admit(beds["B1"], "P1", "GENERAL")
    service.start_tat(beds["B1"])
    with pytest.raises(TatStateError):
        service.start_tat(beds["B1"])


def test_tat_restart_after_expiry_reports_expired(service, beds, clock):
    service.admit(beds["B1"], "P1", "GENERAL")
    service.start_tat(beds["B1"])
    clock.advance(1800)

    # stored status is still running, the countdown has run out
    with pytest.raises(TatStateError) as info:
        service.start_tat(beds["B1"])
    assert "expired" in info.value.message


def test_tat_stop_after_expiry(service, beds, clock):
    service.admit(beds["B1"], "P1", "GENERAL")
    service.start_tat(beds["B1"])
    clock.advance(1800)

    with pytest.raises(TatStateError):
        service.stop_tat(beds["B1"])
    bed = service.get_bed(beds["B1"])
    assert bed.tat_status == "expired"
    assert bed.tat_remaining_seconds == 0


def test_tat_stop_when_idle(service, beds):
    service.admit(beds["B1"], "P1", "GENERAL")
    with pytest.raises(TatStateError):
        service.stop_tat(beds["B1"])


# ---------------- reads ----------------


def test_today_stats(service, beds):
    assert service.today_stats() == {
        "date_key": "20240301",
        "count": 0,
        "last_ipd_number": None,
    }
    service.admit(beds["B1"], "P1", "GENERAL")
    service.admit(beds["B2"], "P2", "GENERAL")
    stats = service.today_stats()
    assert stats["count"] == 2
    assert stats["last_ipd_number"] == "IPD-20240301-002"


def test_list_beds_ordered_by_number(service, beds):
    assert [b.bed_number for b in service.list_beds()] == ["B1", "B2", "B3", "B4", "B5"]


def test_audit_trail_for_admit_and_discharge(service, beds, db):
    adm = service.admit(beds["B1"], "P1", "GENERAL")
    service.discharge(beds["B1"])
    rows = db.query(IpdAuditLog).order_by(IpdAuditLog.id).all()
    assert [r.action for r in rows] == ["ADMIT", "DISCHARGE"]
    assert all(r.bed_id == beds["B1"] and r.admission_id == adm.id for r in rows)
    assert rows[0].new_values["admission_number"] == "IPD-20240301-001"
