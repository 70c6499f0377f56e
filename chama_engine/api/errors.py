"""Map domain exceptions to HTTP responses"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chama_engine.domain.exceptions import (
    ConflictError,
    DomainException,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)

# Most specific first; the first isinstance match wins
STATUS_BY_EXCEPTION = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PolicyViolationError, 422),
)


def status_for(exc: Exception) -> int:
    for exc_type, status_code in STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def error_body(exc: Exception, request_id: str) -> dict:
    status_code = status_for(exc)
    if status_code == 500:
        return {"error": "InternalError", "detail": "Internal server error", "request_id": request_id}
    return {"error": type(exc).__name__, "detail": str(exc), "request_id": request_id}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        request_id = getattr(request.state, "request_id", "unknown")
        status_code = status_for(exc)
        if status_code == 409:
            logging.warning(f"Conflict: {exc}", extra={"request_id": request_id})
        elif status_code == 500:
            logging.error(f"Unhandled domain error: {exc}", extra={"request_id": request_id})
        else:
            logging.info(f"Request rejected: {exc}", extra={"request_id": request_id, "error": type(exc).__name__})
        return JSONResponse(status_code=status_code, content=error_body(exc, request_id))
