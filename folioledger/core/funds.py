from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from folioledger.core.errors import IntegrityFault, ValidationError
from folioledger.core.portfolio_store import add_cash_flow, get_account, get_portfolio
from folioledger.core.pricing import PriceSource
from folioledger.core.valuation import value_portfolio
from folioledger.db.audit import log_change
from folioledger.db.models import FundUnitTransaction, InvestorHolding, Portfolio, PortfolioSnapshot
from folioledger.utils.locks import keyed_lock
from folioledger.utils.money import NAV, UNITS, ZERO, as_json_number, dec, money, q

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class NavQuote:
    nav_per_unit: Decimal
    source: str  # SEED | SNAPSHOT | LIVE
    as_of: dt.date
    snapshot_date: Optional[dt.date] = None

    def as_json(self) -> dict[str, Any]:
        return {
            "nav_per_unit": as_json_number(self.nav_per_unit),
            "source": self.source,
            "as_of": self.as_of.isoformat(),
            "snapshot_date": self.snapshot_date.isoformat() if self.snapshot_date else None,
        }


@dataclass(frozen=True)
class UnitTxnResult:
    transaction_id: int
    holding_id: int
    type: str
    units: Decimal
    nav_per_unit: Decimal
    nav_source: str
    amount: Decimal
    realized_pl: Optional[Decimal]
    cash_flow_id: int
    holding_units: Decimal
    outstanding_units: Decimal

    def as_json(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "holding_id": self.holding_id,
            "type": self.type,
            "units": as_json_number(self.units),
            "nav_per_unit": as_json_number(self.nav_per_unit),
            "nav_source": self.nav_source,
            "amount": as_json_number(self.amount),
            "realized_pl": as_json_number(self.realized_pl),
            "cash_flow_id": self.cash_flow_id,
            "holding_units": as_json_number(self.holding_units),
            "outstanding_units": as_json_number(self.outstanding_units),
        }


@dataclass
class HoldingState:
    """Running aggregate of one investor's unit transactions."""

    total_units: Decimal = ZERO
    total_investment: Decimal = ZERO
    avg_cost_per_unit: Decimal = ZERO
    realized_pl: Decimal = ZERO

    @classmethod
    def from_holding(cls, h: InvestorHolding) -> "HoldingState":
        return cls(
            total_units=dec(h.total_units),
            total_investment=dec(h.total_investment),
            avg_cost_per_unit=dec(h.avg_cost_per_unit),
            realized_pl=dec(h.realized_pl),
        )

    def subscribe(self, units: Decimal, amount: Decimal) -> None:
        self.total_units += units
        self.total_investment = money(self.total_investment + amount)
        self.avg_cost_per_unit = q(self.total_investment / self.total_units, NAV)

    def redeem(self, units: Decimal, nav: Decimal) -> Decimal:
        if units > self.total_units:
            raise ValidationError(f"Cannot redeem {units} units; holding has {self.total_units}")
        realized = money((nav - self.avg_cost_per_unit) * units)
        self.total_units -= units
        if self.total_units == 0:
            self.total_investment = ZERO
            self.avg_cost_per_unit = ZERO
        else:
            self.total_investment = max(ZERO, money(self.total_investment - self.avg_cost_per_unit * units))
        self.realized_pl = money(self.realized_pl + realized)
        return realized

    def write_to(self, h: InvestorHolding) -> None:
        h.total_units = self.total_units
        h.total_investment = self.total_investment
        h.avg_cost_per_unit = self.avg_cost_per_unit
        h.realized_pl = self.realized_pl


def units_outstanding_as_of(session: Session, portfolio_id: int, as_of: dt.date) -> Decimal:
    signed = case((FundUnitTransaction.type == "REDEEM", -FundUnitTransaction.units), else_=FundUnitTransaction.units)
    total = (
        session.query(func.coalesce(func.sum(signed), 0))
        .filter(FundUnitTransaction.portfolio_id == portfolio_id, FundUnitTransaction.effective_date <= as_of)
        .scalar()
    )
    return q(total or 0, UNITS)


def _require_fund(session: Session, portfolio_id: int) -> Portfolio:
    p = get_portfolio(session, portfolio_id)
    if not p.is_fund:
        raise ValidationError(f"Portfolio {portfolio_id} is not a fund")
    return p


def _latest_unit_txn_date(session: Session, portfolio_id: int) -> Optional[dt.date]:
    return (
        session.query(func.max(FundUnitTransaction.effective_date))
        .filter(FundUnitTransaction.portfolio_id == portfolio_id)
        .scalar()
    )


def nav_per_unit(
    session: Session,
    portfolio_id: int,
    as_of: dt.date,
    *,
    prices: Optional[PriceSource] = None,
) -> NavQuote:
    """
    NAV per unit effective on `as_of`.

    - no outstanding units: the portfolio's seed NAV
    - else the latest DAILY snapshot dated on/before `as_of` that carries units
    - else a point-in-time valuation divided by the outstanding units

    Snapshots dated after `as_of` are never consulted.
    """
    p = _require_fund(session, portfolio_id)
    units = units_outstanding_as_of(session, portfolio_id, as_of)
    if units == 0:
        return NavQuote(nav_per_unit=q(p.seed_nav_per_unit, NAV), source="SEED", as_of=as_of)

    snap = (
        session.query(PortfolioSnapshot)
        .filter(
            PortfolioSnapshot.portfolio_id == portfolio_id,
            PortfolioSnapshot.granularity == "DAILY",
            PortfolioSnapshot.snapshot_date <= as_of,
            PortfolioSnapshot.nav_per_unit.isnot(None),
            PortfolioSnapshot.outstanding_units > 0,
        )
        .order_by(PortfolioSnapshot.snapshot_date.desc())
        .first()
    )
    if snap is not None and dec(snap.nav_per_unit) > 0:
        return NavQuote(nav_per_unit=q(snap.nav_per_unit, NAV), source="SNAPSHOT", as_of=as_of, snapshot_date=snap.snapshot_date)

    val = value_portfolio(session, portfolio_id, as_of, prices)
    nav = q(val.total_value / units, NAV)
    if nav <= 0:
        raise ValidationError(f"NAV for portfolio {portfolio_id} on {as_of.isoformat()} cannot be determined (value {val.total_value})")
    return NavQuote(nav_per_unit=nav, source="LIVE", as_of=as_of)


def _get_or_create_holding(session: Session, *, account_id: int, portfolio_id: int) -> InvestorHolding:
    h = (
        session.query(InvestorHolding)
        .filter(InvestorHolding.account_id == account_id, InvestorHolding.portfolio_id == portfolio_id)
        .one_or_none()
    )
    if h is None:
        h = InvestorHolding(
            account_id=account_id,
            portfolio_id=portfolio_id,
            total_units=ZERO,
            avg_cost_per_unit=ZERO,
            total_investment=ZERO,
            current_value=ZERO,
            realized_pl=ZERO,
            unrealized_pl=ZERO,
        )
        session.add(h)
        session.flush()
    return h


def _check_not_backdated(session: Session, portfolio_id: int, effective_date: dt.date) -> None:
    latest = _latest_unit_txn_date(session, portfolio_id)
    if latest is not None and effective_date < latest:
        raise ValidationError(
            f"Fund transactions cannot be dated {effective_date.isoformat()}, before the latest unit "
            f"transaction on {latest.isoformat()}"
        )


def verify_unit_invariant(session: Session, portfolio_id: int) -> Decimal:
    """Sum of holding units must equal the portfolio's outstanding units."""
    p = get_portfolio(session, portfolio_id)
    held = (
        session.query(func.coalesce(func.sum(InvestorHolding.total_units), 0))
        .filter(InvestorHolding.portfolio_id == portfolio_id)
        .scalar()
    )
    held_d = q(held or 0, UNITS)
    outstanding = q(p.total_outstanding_units, UNITS)
    if held_d != outstanding:
        log.error("Unit invariant broken portfolio=%s holdings=%s outstanding=%s", portfolio_id, held_d, outstanding)
        raise IntegrityFault(
            f"Portfolio {portfolio_id}: holdings sum to {held_d} units but {outstanding} are outstanding"
        )
    return outstanding


def _revalue(h: InvestorHolding, nav: Decimal) -> None:
    units = dec(h.total_units)
    h.current_value = money(units * nav)
    h.unrealized_pl = money((nav - dec(h.avg_cost_per_unit)) * units)


def subscribe(
    session: Session,
    *,
    portfolio_id: int,
    account_id: int,
    amount: Any,
    effective_date: dt.date,
    description: Optional[str] = None,
    prices: Optional[PriceSource] = None,
    actor: str = "system",
) -> UnitTxnResult:
    """
    Issue units for a cash subscription at the NAV effective on `effective_date`.

    Units, the transaction, its cash inflow, the holding and the outstanding-unit
    total are written in one transaction.
    """
    amt = money(amount)
    if amt <= 0:
        raise ValidationError("Subscription amount must be positive")
    get_account(session, account_id)
    _require_fund(session, portfolio_id)

    with keyed_lock(("fund", portfolio_id)):
        try:
            p = session.query(Portfolio).filter(Portfolio.id == portfolio_id).populate_existing().one()
            _check_not_backdated(session, portfolio_id, effective_date)
            nq = nav_per_unit(session, portfolio_id, effective_date, prices=prices)
            units = q(amt / nq.nav_per_unit, UNITS)
            if units <= 0:
                raise ValidationError(f"Amount {amt} buys no units at NAV {nq.nav_per_unit}")

            h = _get_or_create_holding(session, account_id=account_id, portfolio_id=portfolio_id)
            state = HoldingState.from_holding(h)
            state.subscribe(units, amt)
            state.write_to(h)
            _revalue(h, nq.nav_per_unit)

            cf = add_cash_flow(
                session,
                portfolio_id=portfolio_id,
                flow_date=effective_date,
                flow_type="FUND_SUBSCRIPTION",
                amount=amt,
                reference_type="FUND_UNIT_TXN",
                description=description or f"Subscription by account {account_id}",
            )
            txn = FundUnitTransaction(
                holding_id=h.id,
                portfolio_id=portfolio_id,
                type="SUBSCRIBE",
                units=units,
                nav_per_unit=nq.nav_per_unit,
                amount=amt,
                realized_pl=None,
                nav_source=nq.source,
                effective_date=effective_date,
                cash_flow_id=cf.id,
                description=description,
            )
            session.add(txn)
            session.flush()
            cf.reference_id = txn.id
            p.total_outstanding_units = q(dec(p.total_outstanding_units) + units, UNITS)
            session.flush()
            verify_unit_invariant(session, portfolio_id)
            log_change(
                session,
                actor=actor,
                action="FUND_SUBSCRIBE",
                entity="FundUnitTransaction",
                entity_id=str(txn.id),
                old=None,
                new={
                    "account_id": account_id,
                    "amount": str(amt),
                    "units": str(units),
                    "nav_per_unit": str(nq.nav_per_unit),
                    "nav_source": nq.source,
                },
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

    log.info("Subscribed account=%s portfolio=%s amount=%s units=%s nav=%s", account_id, portfolio_id, amt, units, nq.nav_per_unit)
    return UnitTxnResult(
        transaction_id=txn.id,
        holding_id=h.id,
        type="SUBSCRIBE",
        units=units,
        nav_per_unit=nq.nav_per_unit,
        nav_source=nq.source,
        amount=amt,
        realized_pl=None,
        cash_flow_id=cf.id,
        holding_units=dec(h.total_units),
        outstanding_units=dec(p.total_outstanding_units),
    )


def redeem(
    session: Session,
    *,
    portfolio_id: int,
    account_id: int,
    units: Any,
    effective_date: dt.date,
    description: Optional[str] = None,
    prices: Optional[PriceSource] = None,
    actor: str = "system",
) -> UnitTxnResult:
    """Burn units at the NAV effective on `effective_date` and pay out the proceeds."""
    u = q(units, UNITS)
    if u <= 0:
        raise ValidationError("Redemption units must be positive")
    get_account(session, account_id)
    _require_fund(session, portfolio_id)

    with keyed_lock(("fund", portfolio_id)):
        try:
            p = session.query(Portfolio).filter(Portfolio.id == portfolio_id).populate_existing().one()
            h = (
                session.query(InvestorHolding)
                .filter(InvestorHolding.account_id == account_id, InvestorHolding.portfolio_id == portfolio_id)
                .populate_existing()
                .one_or_none()
            )
            if h is None or dec(h.total_units) <= 0:
                raise ValidationError(f"Account {account_id} holds no units of portfolio {portfolio_id}")
            if u > dec(h.total_units):
                raise ValidationError(f"Cannot redeem {u} units; account {account_id} holds {dec(h.total_units)}")
            _check_not_backdated(session, portfolio_id, effective_date)
            nq = nav_per_unit(session, portfolio_id, effective_date, prices=prices)
            amt = money(u * nq.nav_per_unit)

            state = HoldingState.from_holding(h)
            realized = state.redeem(u, nq.nav_per_unit)
            state.write_to(h)
            _revalue(h, nq.nav_per_unit)

            cf = add_cash_flow(
                session,
                portfolio_id=portfolio_id,
                flow_date=effective_date,
                flow_type="FUND_REDEMPTION",
                amount=-amt,
                reference_type="FUND_UNIT_TXN",
                description=description or f"Redemption by account {account_id}",
            )
            txn = FundUnitTransaction(
                holding_id=h.id,
                portfolio_id=portfolio_id,
                type="REDEEM",
                units=u,
                nav_per_unit=nq.nav_per_unit,
                amount=amt,
                realized_pl=realized,
                nav_source=nq.source,
                effective_date=effective_date,
                cash_flow_id=cf.id,
                description=description,
            )
            session.add(txn)
            session.flush()
            cf.reference_id = txn.id
            p.total_outstanding_units = q(dec(p.total_outstanding_units) - u, UNITS)
            session.flush()
            verify_unit_invariant(session, portfolio_id)
            log_change(
                session,
                actor=actor,
                action="FUND_REDEEM",
                entity="FundUnitTransaction",
                entity_id=str(txn.id),
                old=None,
                new={
                    "account_id": account_id,
                    "units": str(u),
                    "amount": str(amt),
                    "nav_per_unit": str(nq.nav_per_unit),
                    "realized_pl": str(realized),
                },
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

    log.info("Redeemed account=%s portfolio=%s units=%s amount=%s nav=%s", account_id, portfolio_id, u, amt, nq.nav_per_unit)
    return UnitTxnResult(
        transaction_id=txn.id,
        holding_id=h.id,
        type="REDEEM",
        units=u,
        nav_per_unit=nq.nav_per_unit,
        nav_source=nq.source,
        amount=amt,
        realized_pl=realized,
        cash_flow_id=cf.id,
        holding_units=dec(h.total_units),
        outstanding_units=dec(p.total_outstanding_units),
    )


def convert_to_fund(
    session: Session,
    *,
    portfolio_id: int,
    seed_nav_per_unit: Any = None,
    actor: str = "system",
) -> Portfolio:
    p = get_portfolio(session, portfolio_id)
    if p.is_fund:
        raise ValidationError(f"Portfolio {portfolio_id} is already a fund")
    seed = q(seed_nav_per_unit, NAV) if seed_nav_per_unit is not None else q(p.seed_nav_per_unit, NAV)
    if seed <= 0:
        raise ValidationError("Seed NAV per unit must be positive")
    old = {"is_fund": p.is_fund, "seed_nav_per_unit": str(p.seed_nav_per_unit)}
    p.is_fund = True
    p.seed_nav_per_unit = seed
    p.total_outstanding_units = ZERO
    p.nav_per_unit = seed
    log_change(
        session,
        actor=actor,
        action="CONVERT_TO_FUND",
        entity="Portfolio",
        entity_id=str(p.id),
        old=old,
        new={"is_fund": True, "seed_nav_per_unit": str(seed)},
    )
    session.commit()
    return p


def refresh_nav(
    session: Session,
    *,
    portfolio_id: int,
    as_of: Optional[dt.date] = None,
    prices: Optional[PriceSource] = None,
) -> NavQuote:
    """Store the current NAV on the portfolio and mark every holding to it."""
    d = as_of or dt.date.today()
    with keyed_lock(("fund", portfolio_id)):
        try:
            nq = nav_per_unit(session, portfolio_id, d, prices=prices)
            p = get_portfolio(session, portfolio_id)
            p.nav_per_unit = nq.nav_per_unit
            p.last_nav_date = d
            for h in session.query(InvestorHolding).filter(InvestorHolding.portfolio_id == portfolio_id).all():
                _revalue(h, nq.nav_per_unit)
            session.commit()
        except Exception:
            session.rollback()
            raise
    return nq


def _replay_holding(txns: Iterable[FundUnitTransaction]) -> HoldingState:
    state = HoldingState()
    for t in txns:
        if t.type == "SUBSCRIBE":
            state.subscribe(dec(t.units), dec(t.amount))
        else:
            try:
                state.redeem(dec(t.units), dec(t.nav_per_unit))
            except ValidationError as e:
                raise IntegrityFault(f"Unit transaction {t.id} redeems more than held: {e}") from e
    return state


def rebuild_holdings(session: Session, *, portfolio_id: int, actor: str = "system") -> dict[str, Any]:
    """
    Recompute every holding and the outstanding-unit total from the unit
    transaction history.
    """
    p = _require_fund(session, portfolio_id)
    with keyed_lock(("fund", portfolio_id)):
        try:
            holdings = session.query(InvestorHolding).filter(InvestorHolding.portfolio_id == portfolio_id).all()
            before = str(p.total_outstanding_units)
            total = ZERO
            nav = dec(p.nav_per_unit) if p.nav_per_unit is not None else None
            for h in holdings:
                txns = (
                    session.query(FundUnitTransaction)
                    .filter(FundUnitTransaction.holding_id == h.id)
                    .order_by(FundUnitTransaction.effective_date.asc(), FundUnitTransaction.id.asc())
                    .all()
                )
                state = _replay_holding(txns)
                state.write_to(h)
                if nav is not None:
                    _revalue(h, nav)
                total += state.total_units
            p.total_outstanding_units = q(total, UNITS)
            session.flush()
            verify_unit_invariant(session, portfolio_id)
            log_change(
                session,
                actor=actor,
                action="REBUILD_HOLDINGS",
                entity="Portfolio",
                entity_id=str(portfolio_id),
                old={"total_outstanding_units": before},
                new={"total_outstanding_units": str(p.total_outstanding_units), "holdings": len(holdings)},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
    return {"portfolio_id": portfolio_id, "holdings": len(holdings), "total_outstanding_units": as_json_number(dec(p.total_outstanding_units))}


def holding_detail(session: Session, *, portfolio_id: int, account_id: int) -> dict[str, Any]:
    _require_fund(session, portfolio_id)
    acct = get_account(session, account_id)
    h = (
        session.query(InvestorHolding)
        .filter(InvestorHolding.account_id == account_id, InvestorHolding.portfolio_id == portfolio_id)
        .one_or_none()
    )
    if h is None:
        raise ValidationError(f"Account {account_id} has no holding in portfolio {portfolio_id}")
    txns = (
        session.query(FundUnitTransaction)
        .filter(FundUnitTransaction.holding_id == h.id)
        .order_by(FundUnitTransaction.effective_date.asc(), FundUnitTransaction.id.asc())
        .all()
    )
    subscribed = sum((dec(t.amount) for t in txns if t.type == "SUBSCRIBE"), ZERO)
    redeemed = sum((dec(t.amount) for t in txns if t.type == "REDEEM"), ZERO)
    return {
        "account_id": acct.id,
        "account_name": acct.name,
        "portfolio_id": portfolio_id,
        "total_units": as_json_number(dec(h.total_units)),
        "avg_cost_per_unit": as_json_number(dec(h.avg_cost_per_unit)),
        "total_investment": as_json_number(dec(h.total_investment)),
        "current_value": as_json_number(dec(h.current_value)),
        "realized_pl": as_json_number(dec(h.realized_pl)),
        "unrealized_pl": as_json_number(dec(h.unrealized_pl)),
        "total_subscribed": as_json_number(money(subscribed)),
        "total_redeemed": as_json_number(money(redeemed)),
        "transactions": [
            {
                "id": t.id,
                "type": t.type,
                "units": as_json_number(dec(t.units)),
                "nav_per_unit": as_json_number(dec(t.nav_per_unit)),
                "amount": as_json_number(dec(t.amount)),
                "realized_pl": as_json_number(dec(t.realized_pl)) if t.realized_pl is not None else None,
                "nav_source": t.nav_source,
                "effective_date": t.effective_date.isoformat(),
            }
            for t in txns
        ],
    }


def list_fund_investors(session: Session, *, portfolio_id: int) -> list[dict[str, Any]]:
    p = _require_fund(session, portfolio_id)
    outstanding = dec(p.total_outstanding_units)
    rows = (
        session.query(InvestorHolding)
        .filter(InvestorHolding.portfolio_id == portfolio_id, InvestorHolding.total_units > 0)
        .order_by(InvestorHolding.total_units.desc(), InvestorHolding.id.asc())
        .all()
    )
    out: list[dict[str, Any]] = []
    for h in rows:
        units = dec(h.total_units)
        out.append(
            {
                "account_id": h.account_id,
                "account_name": h.account.name,
                "total_units": as_json_number(units),
                "ownership_pct": as_json_number(q(units / outstanding, Decimal("0.000001"))) if outstanding else None,
                "current_value": as_json_number(dec(h.current_value)),
                "unrealized_pl": as_json_number(dec(h.unrealized_pl)),
            }
        )
    return out
