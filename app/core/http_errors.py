# app/core/http_errors.py
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.errors import (
    LedgerRejected,
    NetworkTimeout,
    NotFound,
    ProjectionConflict,
    RejectionReason,
    ShipmentLedgerError,
    SignatureError,
    ValidationError,
)


def status_for(exc: ShipmentLedgerError) -> int:
    if isinstance(exc, ValidationError):
        return 403 if exc.reason == RejectionReason.WRONG_ACTOR else 409
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (ProjectionConflict, LedgerRejected)):
        return 409
    if isinstance(exc, SignatureError):
        return 422
    if isinstance(exc, NetworkTimeout):
        return 504
    return 500


async def ledger_error_handler(request: Request, exc: ShipmentLedgerError) -> JSONResponse:
    body = exc.to_dict()
    body["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_for(exc), content=body)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShipmentLedgerError, ledger_error_handler)
