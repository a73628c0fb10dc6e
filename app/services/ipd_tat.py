# FILE: app/services/ipd_tat.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.models.ipd import TAT_EXPIRED, TAT_IDLE, TAT_RUNNING
from app.utils.timezone import to_naive_utc


@dataclass(frozen=True)
class TatSnapshot:
    status: str
    remaining_seconds: int


def remaining_seconds(start: datetime, duration_seconds: int,
                      now: datetime) -> int:
    elapsed = (to_naive_utc(now) - to_naive_utc(start)).total_seconds()
    return max(0, int(duration_seconds - elapsed))


def derive_tat(
    status: Optional[str],
    start: Optional[datetime],
    duration_seconds: int,
    now: datetime,
    remaining_snapshot: Optional[int] = None,
) -> TatSnapshot:
    """
    Lazy TAT view of a bed at `now`.

    RUNNING counts down from `start`; once nothing is left it reads as
    EXPIRED. COMPLETED / EXPIRED keep the stored snapshot, IDLE shows the
    full duration. Nothing is scheduled; callers re-derive on every read.
    """
    status = status or TAT_IDLE

    if status == TAT_RUNNING:
        if start is None:
            return TatSnapshot(TAT_IDLE, duration_seconds)
        left = remaining_seconds(start, duration_seconds, now)
        if left <= 0:
            return TatSnapshot(TAT_EXPIRED, 0)
        return TatSnapshot(TAT_RUNNING, left)

    if status == TAT_IDLE:
        return TatSnapshot(TAT_IDLE, duration_seconds)

    if status == TAT_EXPIRED:
        return TatSnapshot(TAT_EXPIRED, 0)

    snap = duration_seconds if remaining_snapshot is None else remaining_snapshot
    return TatSnapshot(status, max(0, int(snap)))


def derive_bed_tat(bed, now: datetime) -> TatSnapshot:
    return derive_tat(
        bed.tat_status,
        bed.tat_start_time,
        int(bed.tat_duration_seconds or 0),
        now,
        bed.tat_remaining_seconds,
    )
