"""Secure error handling for API responses.

Clients get a safe message; logs get the full details. Faults raised by the
orchestrator map onto HTTP statuses here:

    ValidationFault                          -> 400
    JobNotFoundError / SessionNotFoundError  -> 404
    PersistenceFault                         -> 503 (retriable)
    anything else                            -> 500 with an opaque reference id
"""

import uuid
from typing import NoReturn

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from sharpflow.errors import (
    JobNotFoundError,
    PersistenceFault,
    SessionNotFoundError,
    ValidationFault,
)

log = structlog.get_logger()

# Generic messages for different error categories
INTERNAL_ERROR = "An internal error occurred. Please try again later."
VALIDATION_ERROR = "Invalid request data."
UNAVAILABLE_ERROR = "The service is temporarily unavailable. Please retry."
AUTH_ERROR = "Authentication failed."


def new_error_id() -> str:
    return str(uuid.uuid4())[:8]


def raise_auth_error(message: str | None = None) -> NoReturn:
    raise HTTPException(
        status_code=401,
        detail=message or AUTH_ERROR,
        headers={"WWW-Authenticate": "Bearer"},
    )


# =============================================================================
# Exception handlers
# =============================================================================


async def _validation_fault(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, ValidationFault):
        return await _unhandled(request, exc)
    log.info("validation_error", error_message=exc.message, details=exc.details)
    content: dict = {"detail": exc.message or VALIDATION_ERROR}
    if "fields" in exc.details:
        content["fields"] = exc.details["fields"]
    return JSONResponse(status_code=400, content=content)


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, (JobNotFoundError, SessionNotFoundError)):
        return await _unhandled(request, exc)
    log.info("resource_not_found", **exc.details)
    return JSONResponse(status_code=404, content={"detail": exc.message})


async def _persistence_fault(_request: Request, exc: Exception) -> JSONResponse:
    error_id = new_error_id()
    log.error("store_unavailable", error_id=error_id, error_message=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": f"{UNAVAILABLE_ERROR} (ref: {error_id})"},
        headers={"Retry-After": "5"},
    )


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    error_id = new_error_id()
    log.error(
        "internal_error",
        error_id=error_id,
        path=request.url.path,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    return JSONResponse(
        status_code=500, content={"detail": f"{INTERNAL_ERROR} (ref: {error_id})"}
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationFault, _validation_fault)
    app.add_exception_handler(JobNotFoundError, _not_found)
    app.add_exception_handler(SessionNotFoundError, _not_found)
    app.add_exception_handler(PersistenceFault, _persistence_fault)
    app.add_exception_handler(Exception, _unhandled)
