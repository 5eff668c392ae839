from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from folioledger.app.db import db_session
from folioledger.app.utils import get_actor_from_request, jsonable
from folioledger.core.portfolio_store import (
    cash_balance_as_of,
    create_account,
    create_asset,
    create_portfolio,
    get_portfolio,
    record_cash_flow,
    record_price,
)


router = APIRouter(prefix="/api", tags=["portfolios"])


class PortfolioIn(BaseModel):
    name: str
    base_currency: str = "USD"
    is_fund: bool = False
    matching_policy: Optional[str] = None
    seed_nav_per_unit: Optional[Decimal] = None


class AssetIn(BaseModel):
    symbol: str
    name: Optional[str] = None
    asset_type: str = "STOCK"
    currency: str = "USD"


class AccountIn(BaseModel):
    name: str


class CashFlowIn(BaseModel):
    flow_date: dt.date
    flow_type: str
    amount: Decimal
    description: Optional[str] = None


class PriceIn(BaseModel):
    price_date: dt.date
    price: Decimal
    source: str = "MANUAL"


def _portfolio_json(p) -> dict:
    return jsonable(
        {
            "id": p.id,
            "name": p.name,
            "base_currency": p.base_currency,
            "is_fund": p.is_fund,
            "matching_policy": p.matching_policy,
            "total_outstanding_units": p.total_outstanding_units,
            "seed_nav_per_unit": p.seed_nav_per_unit,
            "nav_per_unit": p.nav_per_unit,
            "last_nav_date": p.last_nav_date,
        }
    )


@router.post("/portfolios", status_code=201)
def create_portfolio_api(body: PortfolioIn, request: Request, session: Session = Depends(db_session)):
    p = create_portfolio(
        session,
        name=body.name,
        base_currency=body.base_currency,
        is_fund=body.is_fund,
        matching_policy=body.matching_policy,
        seed_nav_per_unit=body.seed_nav_per_unit,
        actor=get_actor_from_request(request),
    )
    return _portfolio_json(p)


@router.get("/portfolios/{portfolio_id}")
def get_portfolio_api(portfolio_id: int, as_of: Optional[dt.date] = None, session: Session = Depends(db_session)):
    p = get_portfolio(session, portfolio_id)
    out = _portfolio_json(p)
    d = as_of or dt.date.today()
    out["cash_balance"] = jsonable(cash_balance_as_of(session, portfolio_id, d))
    out["cash_as_of"] = d.isoformat()
    return out


@router.post("/assets", status_code=201)
def create_asset_api(body: AssetIn, session: Session = Depends(db_session)):
    a = create_asset(session, symbol=body.symbol, name=body.name, asset_type=body.asset_type, currency=body.currency)
    return {"id": a.id, "symbol": a.symbol, "name": a.name, "asset_type": a.asset_type, "currency": a.currency}


@router.post("/assets/{asset_id}/prices", status_code=201)
def record_price_api(asset_id: int, body: PriceIn, session: Session = Depends(db_session)):
    row = record_price(session, asset_id=asset_id, price_date=body.price_date, price=body.price, source=body.source)
    return jsonable({"asset_id": row.asset_id, "price_date": row.price_date, "price": row.price, "source": row.source})


@router.post("/accounts", status_code=201)
def create_account_api(body: AccountIn, session: Session = Depends(db_session)):
    a = create_account(session, name=body.name)
    return {"id": a.id, "name": a.name}


@router.post("/portfolios/{portfolio_id}/cash-flows", status_code=201)
def record_cash_flow_api(portfolio_id: int, body: CashFlowIn, request: Request, session: Session = Depends(db_session)):
    cf = record_cash_flow(
        session,
        portfolio_id=portfolio_id,
        flow_date=body.flow_date,
        flow_type=body.flow_type,
        amount=body.amount,
        description=body.description,
        actor=get_actor_from_request(request),
    )
    return jsonable({"id": cf.id, "flow_date": cf.flow_date, "flow_type": cf.flow_type, "amount": cf.amount})
