from __future__ import annotations

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from folioledger.app.routes.funds import router as funds_router
from folioledger.app.routes.portfolios import router as portfolios_router
from folioledger.app.routes.snapshots import router as snapshots_router
from folioledger.app.routes.trades import router as trades_router
from folioledger.app.utils import error_response
from folioledger.core.config import get_config
from folioledger.core.errors import LedgerError
from folioledger.db.init_db import init_db
from folioledger.utils.log_setup import setup_logging


load_dotenv()


def create_app(*, init_database: bool = True) -> FastAPI:
    setup_logging(get_config().log_level)
    app = FastAPI(title="folioledger", version="0.1.0")

    @app.on_event("startup")
    def _startup() -> None:
        if init_database:
            init_db()

    @app.exception_handler(LedgerError)
    def _ledger_error(request: Request, exc: LedgerError):
        return error_response(exc)

    @app.get("/health")
    def health() -> dict:
        return {"ok": True}

    app.include_router(portfolios_router)
    app.include_router(trades_router)
    app.include_router(snapshots_router)
    app.include_router(funds_router)
    return app


app = create_app()
