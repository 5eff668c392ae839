from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from folioledger.core.config import get_config
from folioledger.core.errors import NotFoundError, ValidationError
from folioledger.db.audit import log_change
from folioledger.db.models import Account, Asset, AssetPrice, CashFlow, Portfolio
from folioledger.utils.money import PRICE, ZERO, dec, money, q

MANUAL_FLOW_TYPES = {"DEPOSIT", "WITHDRAWAL", "DIVIDEND", "FEE", "OTHER"}


def get_portfolio(session: Session, portfolio_id: int) -> Portfolio:
    p = session.get(Portfolio, portfolio_id)
    if p is None:
        raise NotFoundError(f"Portfolio {portfolio_id} not found")
    return p


def get_asset(session: Session, asset_id: int) -> Asset:
    a = session.get(Asset, asset_id)
    if a is None:
        raise NotFoundError(f"Asset {asset_id} not found")
    return a


def get_account(session: Session, account_id: int) -> Account:
    a = session.get(Account, account_id)
    if a is None:
        raise NotFoundError(f"Account {account_id} not found")
    return a


def create_portfolio(
    session: Session,
    *,
    name: str,
    base_currency: str = "USD",
    is_fund: bool = False,
    matching_policy: Optional[str] = None,
    seed_nav_per_unit: Any = None,
    actor: str = "system",
) -> Portfolio:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Portfolio name is required")
    cfg = get_config()
    policy = (matching_policy or cfg.default_matching_policy).upper()
    if policy not in ("FIFO", "LIFO"):
        raise ValidationError(f"Unknown matching policy: {matching_policy}")
    seed = dec(seed_nav_per_unit) if seed_nav_per_unit is not None else Decimal(cfg.seed_nav_per_unit)
    if seed <= 0:
        raise ValidationError("Seed NAV per unit must be positive")
    p = Portfolio(
        name=name,
        base_currency=(base_currency or "USD").strip().upper(),
        is_fund=bool(is_fund),
        matching_policy=policy,
        total_outstanding_units=ZERO,
        seed_nav_per_unit=seed,
    )
    session.add(p)
    session.flush()
    log_change(
        session,
        actor=actor,
        action="CREATE",
        entity="Portfolio",
        entity_id=str(p.id),
        old=None,
        new={"name": p.name, "is_fund": p.is_fund, "matching_policy": p.matching_policy},
    )
    session.commit()
    return p


def create_asset(
    session: Session,
    *,
    symbol: str,
    name: Optional[str] = None,
    asset_type: str = "STOCK",
    currency: str = "USD",
) -> Asset:
    sym = (symbol or "").strip().upper()
    if not sym:
        raise ValidationError("Asset symbol is required")
    existing = session.query(Asset).filter(Asset.symbol == sym).one_or_none()
    if existing is not None:
        return existing
    a = Asset(symbol=sym, name=(name or sym), asset_type=(asset_type or "OTHER").strip().upper(), currency=currency.upper())
    session.add(a)
    session.commit()
    return a


def create_account(session: Session, *, name: str) -> Account:
    n = (name or "").strip()
    if not n:
        raise ValidationError("Account name is required")
    existing = session.query(Account).filter(Account.name == n).one_or_none()
    if existing is not None:
        return existing
    a = Account(name=n)
    session.add(a)
    session.commit()
    return a


def add_cash_flow(
    session: Session,
    *,
    portfolio_id: int,
    flow_date: dt.date,
    flow_type: str,
    amount: Decimal,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    description: Optional[str] = None,
) -> CashFlow:
    """Append a cash flow inside the caller's transaction (no commit)."""
    cf = CashFlow(
        portfolio_id=portfolio_id,
        flow_date=flow_date,
        flow_type=flow_type,
        amount=money(amount),
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
    )
    session.add(cf)
    session.flush()
    return cf


def record_cash_flow(
    session: Session,
    *,
    portfolio_id: int,
    flow_date: dt.date,
    flow_type: str,
    amount: Any,
    description: Optional[str] = None,
    actor: str = "system",
) -> CashFlow:
    """
    Record a manual cash movement. DEPOSIT/DIVIDEND amounts are inflows,
    WITHDRAWAL/FEE outflows; OTHER keeps the caller's sign.
    """
    get_portfolio(session, portfolio_id)
    ft = (flow_type or "").strip().upper()
    if ft not in MANUAL_FLOW_TYPES:
        raise ValidationError(f"Unsupported cash flow type: {flow_type}")
    amt = money(amount)
    if amt == 0:
        raise ValidationError("Cash flow amount must be non-zero")
    if ft in ("DEPOSIT", "DIVIDEND"):
        amt = abs(amt)
    elif ft in ("WITHDRAWAL", "FEE"):
        amt = -abs(amt)
    cf = add_cash_flow(
        session,
        portfolio_id=portfolio_id,
        flow_date=flow_date,
        flow_type=ft,
        amount=amt,
        reference_type="MANUAL",
        description=description,
    )
    log_change(
        session,
        actor=actor,
        action="CREATE",
        entity="CashFlow",
        entity_id=str(cf.id),
        old=None,
        new={"portfolio_id": portfolio_id, "flow_type": ft, "amount": str(amt), "flow_date": flow_date.isoformat()},
    )
    session.commit()
    return cf


def cash_balance_as_of(session: Session, portfolio_id: int, as_of: dt.date) -> Decimal:
    total = (
        session.query(func.sum(CashFlow.amount))
        .filter(CashFlow.portfolio_id == portfolio_id, CashFlow.flow_date <= as_of)
        .scalar()
    )
    return money(total or 0)


def record_price(
    session: Session,
    *,
    asset_id: int,
    price_date: dt.date,
    price: Any,
    source: str = "MANUAL",
    commit: bool = True,
) -> AssetPrice:
    get_asset(session, asset_id)
    px = q(price, PRICE)
    if px <= 0:
        raise ValidationError("Price must be positive")
    row = (
        session.query(AssetPrice)
        .filter(AssetPrice.asset_id == asset_id, AssetPrice.price_date == price_date)
        .one_or_none()
    )
    if row is None:
        row = AssetPrice(asset_id=asset_id, price_date=price_date, price=px, source=source)
        session.add(row)
    else:
        row.price = px
        row.source = source
    session.flush()
    if commit:
        session.commit()
    return row
