from __future__ import annotations

import datetime as dt
import os
from decimal import Decimal
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from folioledger.core.errors import (
    ConcurrencyConflict,
    IntegrityFault,
    LedgerError,
    NotFoundError,
    SnapshotInProgress,
    ValidationError,
)


def jsonable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        # Decimals travel as strings so no precision is lost.
        return format(value, "f")
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return str(value)


def get_actor_from_request(request: Request) -> str:
    return request.headers.get("X-Actor") or os.environ.get("FOLIOLEDGER_ACTOR_DEFAULT", "api")


def error_response(exc: LedgerError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=400, content={"ok": False, "error": "validation_error", "detail": str(exc)})
    if isinstance(exc, NotFoundError):
        return JSONResponse(status_code=404, content={"ok": False, "error": "not_found", "detail": str(exc)})
    if isinstance(exc, SnapshotInProgress):
        return JSONResponse(
            status_code=409,
            content={
                "ok": False,
                "error": "snapshot_in_progress",
                "detail": str(exc),
                "retryable": True,
                "execution_id": exc.execution_id,
            },
        )
    if isinstance(exc, ConcurrencyConflict):
        return JSONResponse(
            status_code=409,
            content={"ok": False, "error": "concurrency_conflict", "detail": str(exc), "retryable": True},
        )
    if isinstance(exc, IntegrityFault):
        return JSONResponse(status_code=500, content={"ok": False, "error": "integrity_fault", "detail": str(exc)})
    return JSONResponse(status_code=500, content={"ok": False, "error": "ledger_error", "detail": str(exc)})
