# app/core/errors.py
from __future__ import annotations

from typing import Optional


class IpdError(Exception):
    """Base class for bed / admission errors surfaced to the caller."""

    status_code = 400
    retryable = False

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


# ---------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------
class BedNotFound(IpdError):
    status_code = 404

    def __init__(self, bed_id: int) -> None:
        super().__init__("BED_NOT_FOUND", f"Bed {bed_id} not found")
        self.bed_id = bed_id


class AdmissionNotFound(IpdError):
    status_code = 404

    def __init__(self, admission_id: int) -> None:
        super().__init__("ADMISSION_NOT_FOUND",
                         f"Admission {admission_id} not found")
        self.admission_id = admission_id


# ---------------------------------------------------------------------
# Validation (request conflicts with current state, nothing written)
# ---------------------------------------------------------------------
class BedNotAvailable(IpdError):
    status_code = 409

    def __init__(self, bed_id: int) -> None:
        super().__init__("BED_NOT_AVAILABLE",
                         f"Bed {bed_id} is not vacant")
        self.bed_id = bed_id


class BedNotOccupied(IpdError):
    status_code = 409

    def __init__(self, bed_id: int) -> None:
        super().__init__("BED_NOT_OCCUPIED",
                         f"Bed {bed_id} has no active admission")
        self.bed_id = bed_id


class UnknownFormKey(IpdError):
    status_code = 422

    def __init__(self, form_key: str) -> None:
        super().__init__("UNKNOWN_FORM_KEY", f"Unknown form key: {form_key}")
        self.form_key = form_key


class TatStateError(IpdError):
    status_code = 409

    def __init__(self, bed_id: int, message: str) -> None:
        super().__init__("TAT_STATE", f"Bed {bed_id}: {message}")
        self.bed_id = bed_id


# ---------------------------------------------------------------------
# Sequence / partial failures
# ---------------------------------------------------------------------
class SequenceUnavailable(IpdError):
    """The daily counter could not be incremented; nothing was admitted."""

    status_code = 503
    retryable = True

    def __init__(self, day_key: str, message: str = "") -> None:
        super().__init__(
            "SEQUENCE_UNAVAILABLE",
            f"Admission number for {day_key} could not be issued"
            + (f": {message}" if message else ""),
        )
        self.day_key = day_key


class PartialAdmissionFailure(IpdError):
    """
    The admission record was written but the bed could not be occupied.
    `compensated` tells whether the admission was rolled back; when it is
    False an ADMITTED record may be left without an occupied bed and needs
    manual reconciliation.
    """

    status_code = 500

    def __init__(
        self,
        bed_id: int,
        admission_id: int,
        compensated: bool,
        cause: Optional[BaseException] = None,
    ) -> None:
        state = "rolled back" if compensated else "NOT rolled back"
        super().__init__(
            "PARTIAL_ADMISSION",
            f"Admission {admission_id} for bed {bed_id} partially completed "
            f"({state}); contact support",
        )
        self.bed_id = bed_id
        self.admission_id = admission_id
        self.compensated = compensated
        self.cause = cause


class BedReloadFailed(IpdError):
    """
    The bed write is committed but the fresh bed could not be read back, so
    no change event went out for it. Not a write failure: never compensate
    on it. Boards recover by reloading.
    """

    status_code = 503
    retryable = False

    def __init__(self, bed_id: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            "BED_RELOAD_FAILED",
            f"Bed {bed_id} was updated but could not be reloaded; refresh the board",
        )
        self.bed_id = bed_id
        self.cause = cause
