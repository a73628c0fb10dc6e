# app/models/__init__.py
from .ipd import IpdBed, IpdAdmission, IpdCounter, FormKey
from .audit import IpdAuditLog

__all__ = [
    "IpdBed",
    "IpdAdmission",
    "IpdCounter",
    "FormKey",
    "IpdAuditLog",
]
