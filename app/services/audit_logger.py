import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.audit import IpdAuditLog

logger = logging.getLogger(__name__)


def log_audit(
    db: Session,
    *,
    action: str,  # "ADMIT" | "DISCHARGE" | "FORM_UPDATE" | "TAT_START" | "TAT_STOP" | "COMPENSATE"
    bed_id: int,
    admission_id: Optional[int] = None,
    patient_id: Optional[str] = None,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Persist one bed board audit event into ipd_audit_logs.
    Never raises: the bed change it describes is already committed.
    """
    try:
        db.add(
            IpdAuditLog(
                action=action,
                bed_id=bed_id,
                admission_id=admission_id,
                patient_id=patient_id,
                old_values=old_values,
                new_values=new_values,
            ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("audit %s for bed %s not written: %s",
                     action,
                     bed_id,
                     e,
                     extra={"event": "audit_failed", "bed_id": bed_id})
