from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Index,
)

from app.db.base import Base


class IpdAuditLog(Base):
    """
    Audit trail of bed board mutations, one row per committed change.
    Actions: ADMIT / DISCHARGE / FORM_UPDATE / TAT_START / TAT_STOP / COMPENSATE.
    """
    __tablename__ = "ipd_audit_logs"
    __table_args__ = (
        Index("ix_ipd_audit_logs_bed_created", "bed_id", "created_at"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
            "mysql_collate": "utf8mb4_unicode_ci",
        },
    )

    id = Column(Integer, primary_key=True, index=True)

    action = Column(String(20), nullable=False)

    bed_id = Column(Integer, nullable=False)
    admission_id = Column(Integer, nullable=True, index=True)
    patient_id = Column(String(64), nullable=True)

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
