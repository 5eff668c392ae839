from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from folioledger.app.db import db_session
from folioledger.app.utils import get_actor_from_request, jsonable
from folioledger.core.positions import get_position, list_positions, verify_asset_ledger
from folioledger.core.recovery import rebuild_portfolio
from folioledger.core.trades import list_matches, record_trade, rematch_asset


router = APIRouter(prefix="/api/portfolios/{portfolio_id}", tags=["trades"])


class TradeIn(BaseModel):
    asset_id: int
    side: str
    quantity: Decimal
    price: Decimal
    trade_date: dt.date
    fee: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    source: Optional[str] = None
    notes: Optional[str] = None
    expected_version: Optional[int] = None


@router.post("/trades", status_code=201)
def record_trade_api(portfolio_id: int, body: TradeIn, request: Request, session: Session = Depends(db_session)):
    res = record_trade(
        session,
        portfolio_id=portfolio_id,
        asset_id=body.asset_id,
        side=body.side,
        quantity=body.quantity,
        price=body.price,
        trade_date=body.trade_date,
        fee=body.fee,
        tax=body.tax,
        source=body.source or "API",
        notes=body.notes,
        expected_version=body.expected_version,
        actor=get_actor_from_request(request),
    )
    return res.as_json()


@router.get("/positions")
def list_positions_api(
    portfolio_id: int,
    as_of: Optional[dt.date] = None,
    include_closed: bool = False,
    session: Session = Depends(db_session),
):
    return [p.as_json() for p in list_positions(session, portfolio_id, as_of=as_of, include_closed=include_closed)]


@router.get("/positions/{asset_id}")
def get_position_api(portfolio_id: int, asset_id: int, as_of: Optional[dt.date] = None, session: Session = Depends(db_session)):
    return get_position(session, portfolio_id, asset_id, as_of=as_of).as_json()


@router.get("/matches")
def list_matches_api(portfolio_id: int, asset_id: Optional[int] = None, session: Session = Depends(db_session)):
    return [
        jsonable(
            {
                "id": m.id,
                "asset_id": m.asset_id,
                "buy_trade_id": m.buy_trade_id,
                "sell_trade_id": m.sell_trade_id,
                "quantity": m.quantity,
                "buy_price": m.buy_price,
                "sell_price": m.sell_price,
                "allocated_fee": m.allocated_fee,
                "allocated_tax": m.allocated_tax,
                "realized_pl": m.realized_pl,
                "matched_date": m.matched_date,
                "policy": m.policy,
            }
        )
        for m in list_matches(session, portfolio_id=portfolio_id, asset_id=asset_id)
    ]


@router.post("/assets/{asset_id}/rematch")
def rematch_asset_api(portfolio_id: int, asset_id: int, request: Request, session: Session = Depends(db_session)):
    return rematch_asset(session, portfolio_id=portfolio_id, asset_id=asset_id, actor=get_actor_from_request(request)).as_json()


@router.get("/assets/{asset_id}/verify")
def verify_asset_api(portfolio_id: int, asset_id: int, session: Session = Depends(db_session)):
    check = verify_asset_ledger(session, portfolio_id, asset_id)
    return {"portfolio_id": portfolio_id, "asset_id": asset_id, "ok": check.ok, "issues": check.issues}


@router.post("/rebuild")
def rebuild_portfolio_api(portfolio_id: int, request: Request, session: Session = Depends(db_session)):
    return jsonable(rebuild_portfolio(session, portfolio_id=portfolio_id, actor=get_actor_from_request(request)))
