# FILE: app/utils/resp.py
from __future__ import annotations

from typing import Optional
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from app.schemas.common import ApiResponse, ApiError


def err(msg: str,
        status_code: int = 400,
        code: Optional[str] = None,
        retryable: bool = False) -> JSONResponse:
    """Error envelope shared by every handler: {"status": false, "error": {...}}."""
    payload = ApiResponse(status=False,
                          error=ApiError(msg=msg, code=code, retryable=retryable))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))
