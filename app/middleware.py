"""
Middleware and error mapping for the standalone FastAPI app.
"""

from __future__ import annotations

import os

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from deskmem.config import logger
from deskmem.errors import (
    ConflictError,
    DeskMemoryError,
    ExternalServiceError,
    NotFoundError,
    ValidationIssue,
)

STATUS_FOR_ERROR = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationIssue, 422),
    (ExternalServiceError, 502),
)


def _status_for(exc: DeskMemoryError) -> int:
    for error_cls, status_code in STATUS_FOR_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def error_payload(exc: DeskMemoryError) -> dict:
    payload = {
        "status": "error",
        "error_type": exc.error_code,
        "message": str(exc),
        "retryable": exc.retryable,
    }
    if isinstance(exc, ValidationIssue):
        payload["field"] = exc.field
        payload["validation_error"] = exc.error_type
    return payload


async def _handle_core_error(request: Request, exc: DeskMemoryError) -> JSONResponse:
    status_code = _status_for(exc)
    log = logger.warning if status_code >= 500 else logger.info
    log(
        "request_failed",
        extra={"path": request.url.path, "status_code": status_code, "error_code": exc.error_code},
    )
    return JSONResponse(status_code=status_code, content=error_payload(exc))


def configure_middleware(app) -> None:
    """Configure host allowlist, CORS and error mapping for the FastAPI app."""
    app.add_exception_handler(DeskMemoryError, _handle_core_error)

    # Optional host allowlist for production deployments
    trusted_hosts_env = os.environ.get("TRUSTED_HOSTS", "")
    trusted_hosts = [host.strip() for host in trusted_hosts_env.split(",") if host.strip()]
    if trusted_hosts:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=trusted_hosts,
        )

    cors_allowed_env = os.environ.get("CORS_ALLOWED_ORIGINS", "")
    allow_origins = [origin.strip() for origin in cors_allowed_env.split(",") if origin.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
