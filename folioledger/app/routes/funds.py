from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from folioledger.app.db import db_session
from folioledger.app.utils import get_actor_from_request, jsonable
from folioledger.core.funds import (
    convert_to_fund,
    holding_detail,
    list_fund_investors,
    nav_per_unit,
    rebuild_holdings,
    redeem,
    refresh_nav,
    subscribe,
)


router = APIRouter(prefix="/api/funds/{portfolio_id}", tags=["funds"])


class SubscribeIn(BaseModel):
    account_id: int
    amount: Decimal
    effective_date: dt.date
    description: Optional[str] = None


class RedeemIn(BaseModel):
    account_id: int
    units: Decimal
    effective_date: dt.date
    description: Optional[str] = None


class ConvertIn(BaseModel):
    seed_nav_per_unit: Optional[Decimal] = None


@router.post("/convert")
def convert_api(portfolio_id: int, body: ConvertIn, request: Request, session: Session = Depends(db_session)):
    p = convert_to_fund(
        session,
        portfolio_id=portfolio_id,
        seed_nav_per_unit=body.seed_nav_per_unit,
        actor=get_actor_from_request(request),
    )
    return jsonable({"portfolio_id": p.id, "is_fund": p.is_fund, "seed_nav_per_unit": p.seed_nav_per_unit})


@router.post("/subscribe", status_code=201)
def subscribe_api(portfolio_id: int, body: SubscribeIn, request: Request, session: Session = Depends(db_session)):
    res = subscribe(
        session,
        portfolio_id=portfolio_id,
        account_id=body.account_id,
        amount=body.amount,
        effective_date=body.effective_date,
        description=body.description,
        actor=get_actor_from_request(request),
    )
    return res.as_json()


@router.post("/redeem", status_code=201)
def redeem_api(portfolio_id: int, body: RedeemIn, request: Request, session: Session = Depends(db_session)):
    res = redeem(
        session,
        portfolio_id=portfolio_id,
        account_id=body.account_id,
        units=body.units,
        effective_date=body.effective_date,
        description=body.description,
        actor=get_actor_from_request(request),
    )
    return res.as_json()


@router.get("/nav")
def nav_api(portfolio_id: int, as_of: Optional[dt.date] = None, session: Session = Depends(db_session)):
    return nav_per_unit(session, portfolio_id, as_of or dt.date.today()).as_json()


@router.post("/nav/refresh")
def refresh_nav_api(portfolio_id: int, as_of: Optional[dt.date] = None, session: Session = Depends(db_session)):
    return refresh_nav(session, portfolio_id=portfolio_id, as_of=as_of).as_json()


@router.get("/investors")
def investors_api(portfolio_id: int, session: Session = Depends(db_session)):
    return list_fund_investors(session, portfolio_id=portfolio_id)


@router.get("/investors/{account_id}")
def holding_detail_api(portfolio_id: int, account_id: int, session: Session = Depends(db_session)):
    return holding_detail(session, portfolio_id=portfolio_id, account_id=account_id)


@router.post("/rebuild")
def rebuild_holdings_api(portfolio_id: int, request: Request, session: Session = Depends(db_session)):
    return rebuild_holdings(session, portfolio_id=portfolio_id, actor=get_actor_from_request(request))
