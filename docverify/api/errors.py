"""
HTTP Error Mapping

Turns the core's exceptions into HTTP responses.

    ValidationError          -> 400
    OrganizationBannedError  -> 403
    NotFoundError            -> 404
    ConsistencyError         -> 409
    AnchorFailedError        -> 502 (definitely failed)
    LedgerTimeoutError       -> 202 (pending confirmation, check back)
    LedgerUnavailableError   -> 503
    StorageError / StoreError -> 503
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AnchorFailedError,
    ConsistencyError,
    DocVerifyError,
    LedgerError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    NotFoundError,
    OrganizationBannedError,
    StorageError,
    ValidationError,
)
from ..db.store import StoreError

logger = logging.getLogger(__name__)


def _ledger_context(exc: LedgerError) -> dict[str, Any]:
    return {
        "document_hash": exc.document_hash,
        "record_id": str(exc.record_id) if exc.record_id else None,
        "tx_ref": exc.tx_ref,
    }


def error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, LedgerTimeoutError):
        return JSONResponse(
            status_code=202,
            content={
                "status": "pending_confirmation",
                "detail": str(exc),
                **_ledger_context(exc),
            },
        )
    if isinstance(exc, AnchorFailedError):
        return JSONResponse(
            status_code=502,
            content={"detail": str(exc), "reason": exc.reason, **_ledger_context(exc)},
        )
    if isinstance(exc, LedgerUnavailableError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})
    if isinstance(exc, LedgerError):
        return JSONResponse(status_code=502, content={"detail": str(exc), **_ledger_context(exc)})
    if isinstance(exc, OrganizationBannedError):
        return JSONResponse(
            status_code=403,
            content={
                "detail": str(exc),
                "organization_id": exc.organization_id,
                "ban_expires_at": exc.ban_expires_at.isoformat() if exc.ban_expires_at else None,
            },
        )
    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})
    if isinstance(exc, NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})
    if isinstance(exc, ConsistencyError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})
    if isinstance(exc, (StorageError, StoreError)):
        return JSONResponse(status_code=503, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def install_error_handlers(app: FastAPI) -> None:
    """Register handlers for the core exception hierarchy."""

    async def handle(request: Request, exc: Exception) -> JSONResponse:
        response = error_response(exc)
        if response.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return response

    app.add_exception_handler(DocVerifyError, handle)
    app.add_exception_handler(StoreError, handle)
