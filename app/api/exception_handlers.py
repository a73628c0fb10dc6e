# FILE: app/api/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.errors import IpdError, PartialAdmissionFailure
from app.utils.resp import err

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(IpdError)
    async def ipd_error_handler(request: Request, exc: IpdError) -> JSONResponse:
        if isinstance(exc, PartialAdmissionFailure):
            logger.error("%s %s: %s", request.method, request.url.path,
                         exc.message,
                         extra={"event": "partial_admission", "bed_id": exc.bed_id})
        return err(msg=exc.message,
                   status_code=exc.status_code,
                   code=exc.code,
                   retryable=exc.retryable)

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("store failure on %s %s", request.method, request.url.path,
                     exc_info=exc, extra={"event": "store_unavailable"})
        return err(msg="System error, please retry", status_code=503,
                   code="STORE_UNAVAILABLE", retryable=True)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return err(msg=msg, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return err(msg="Validation error", status_code=422, code="VALIDATION")

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled error on %s %s", request.method, request.url.path,
                     exc_info=exc, extra={"event": "unhandled"})
        return err(msg="Internal server error", status_code=500)
