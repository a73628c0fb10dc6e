# FILE: app/schemas/common.py
from __future__ import annotations

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict


class ApiError(BaseModel):
    msg: str
    # machine readable, e.g. BED_NOT_AVAILABLE / STORE_UNAVAILABLE / PARTIAL_ADMISSION
    code: Optional[str] = None
    # True when the same request may simply be sent again
    retryable: bool = False


class ApiResponse(BaseModel):
    status: bool
    data: Optional[Any] = None
    error: Optional[ApiError] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
