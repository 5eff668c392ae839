from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from folioledger.core.config import get_config
from folioledger.core.errors import IntegrityFault, ValidationError
from folioledger.core.executions import finish_execution, mark_in_progress, start_execution
from folioledger.core.funds import units_outstanding_as_of
from folioledger.core.metrics import (
    PERIODS_PER_YEAR,
    base_point_for_window,
    base_value_for_window,
    chained_return_for_window,
    flow_adjusted_return,
    max_drawdown,
    money_weighted_return,
    period_return,
    sharpe_ratio,
    volatility,
)
from folioledger.core.portfolio_store import get_portfolio
from folioledger.core.pricing import PriceSource
from folioledger.core.valuation import PortfolioValuation, value_portfolio
from folioledger.db.models import (
    EXTERNAL_FLOW_TYPES,
    PORTFOLIO_SNAPSHOT_SCHEMA_VERSION,
    Asset,
    AssetGroupSnapshot,
    AssetSnapshot,
    CashFlow,
    PortfolioSnapshot,
    Trade,
)
from folioledger.utils.money import MONEY_TOLERANCE, NAV, ZERO, as_json_number, money, q, ratio
from folioledger.utils.time import utcnow

log = logging.getLogger(__name__)

GRANULARITIES = ("DAILY", "WEEKLY", "MONTHLY")

# Every field written on recompute; a recompute overwrites all of them.
ASSET_SNAPSHOT_FIELDS = (
    "asset_symbol",
    "asset_type",
    "quantity",
    "current_price",
    "price_date",
    "price_source",
    "current_value",
    "cost_basis",
    "avg_cost",
    "realized_pl",
    "unrealized_pl",
    "total_pl",
    "allocation_pct",
    "portfolio_total_value",
    "return_pct",
    "daily_return",
    "cumulative_return",
)
PORTFOLIO_SNAPSHOT_FIELDS = (
    "schema_version",
    "total_value",
    "invested_value",
    "cash_balance",
    "cost_basis",
    "realized_pl",
    "unrealized_pl",
    "total_pl",
    "daily_return",
    "weekly_return",
    "monthly_return",
    "ytd_return",
    "volatility",
    "max_drawdown",
    "sharpe_ratio",
    "net_external_flow",
    "twr_daily",
    "twr_weekly",
    "twr_monthly",
    "twr_ytd",
    "mwr_ytd",
    "asset_allocation_json",
    "asset_count",
    "outstanding_units",
    "nav_per_unit",
    "price_gap_count",
)
ASSET_GROUP_SNAPSHOT_FIELDS = (
    "total_value",
    "cost_basis",
    "realized_pl",
    "unrealized_pl",
    "allocation_pct",
    "asset_count",
    "active_asset_count",
    "net_trade_flow",
    "twr_daily",
    "twr_ytd",
    "volatility",
)


@dataclass
class SnapshotResult:
    execution_id: str
    portfolio_snapshot: PortfolioSnapshot
    asset_snapshots: list[AssetSnapshot] = field(default_factory=list)
    asset_groups: list[AssetGroupSnapshot] = field(default_factory=list)
    gaps: list[dict[str, Any]] = field(default_factory=list)
    replaced: bool = False

    def as_json(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "replaced": self.replaced,
            "gaps": self.gaps,
            "portfolio_snapshot": portfolio_snapshot_as_json(self.portfolio_snapshot),
            "asset_snapshots": [asset_snapshot_as_json(a) for a in self.asset_snapshots],
            "asset_groups": [asset_group_snapshot_as_json(g) for g in self.asset_groups],
        }


def normalize_granularity(granularity: str) -> str:
    g = (granularity or "").strip().upper()
    if g not in GRANULARITIES:
        raise ValidationError(f"Unknown granularity: {granularity}")
    return g


def _prior_snapshots(session: Session, portfolio_id: int, granularity: str, before: dt.date) -> list[PortfolioSnapshot]:
    return (
        session.query(PortfolioSnapshot)
        .filter(
            PortfolioSnapshot.portfolio_id == portfolio_id,
            PortfolioSnapshot.granularity == granularity,
            PortfolioSnapshot.snapshot_date < before,
        )
        .order_by(PortfolioSnapshot.snapshot_date.asc())
        .all()
    )


def _prior_asset_prices(session: Session, portfolio_id: int, granularity: str, before: dt.date) -> dict[int, Decimal]:
    """Price of each asset in its latest snapshot of this granularity before `before`."""
    rows = (
        session.query(AssetSnapshot.asset_id, AssetSnapshot.current_price, AssetSnapshot.snapshot_date)
        .filter(
            AssetSnapshot.portfolio_id == portfolio_id,
            AssetSnapshot.granularity == granularity,
            AssetSnapshot.snapshot_date < before,
        )
        .order_by(AssetSnapshot.snapshot_date.asc())
        .all()
    )
    out: dict[int, Decimal] = {}
    for aid, px, _d in rows:
        out[int(aid)] = Decimal(px)
    return out


def _external_flows(session: Session, portfolio_id: int, through: dt.date) -> list[tuple[dt.date, Decimal]]:
    """Deposits, withdrawals, subscriptions and redemptions dated on or before `through`, ascending."""
    rows = (
        session.query(CashFlow.flow_date, CashFlow.amount)
        .filter(
            CashFlow.portfolio_id == portfolio_id,
            CashFlow.flow_type.in_(EXTERNAL_FLOW_TYPES),
            CashFlow.flow_date <= through,
        )
        .order_by(CashFlow.flow_date.asc(), CashFlow.id.asc())
        .all()
    )
    return [(d, Decimal(a)) for d, a in rows]


def _group_trade_flows(session: Session, portfolio_id: int, after: Optional[dt.date], through: dt.date) -> dict[str, Decimal]:
    """
    Money moved into each asset-type group by trades dated in (after, through].

    A BUY settles as a negative cash flow, so the group's inflow is its negation.
    """
    qry = (
        session.query(Asset.asset_type, func.sum(CashFlow.amount))
        .join(Trade, Trade.id == CashFlow.reference_id)
        .join(Asset, Asset.id == Trade.asset_id)
        .filter(
            CashFlow.portfolio_id == portfolio_id,
            CashFlow.reference_type == "TRADE",
            CashFlow.flow_date <= through,
        )
    )
    if after is not None:
        qry = qry.filter(CashFlow.flow_date > after)
    return {str(t): money(-(amt or 0)) for t, amt in qry.group_by(Asset.asset_type).all()}


def _prior_groups(session: Session, portfolio_id: int, granularity: str, before: dt.date) -> dict[str, list[AssetGroupSnapshot]]:
    rows = (
        session.query(AssetGroupSnapshot)
        .filter(
            AssetGroupSnapshot.portfolio_id == portfolio_id,
            AssetGroupSnapshot.granularity == granularity,
            AssetGroupSnapshot.snapshot_date < before,
        )
        .order_by(AssetGroupSnapshot.snapshot_date.asc())
        .all()
    )
    out: dict[str, list[AssetGroupSnapshot]] = {}
    for g in rows:
        out.setdefault(g.asset_type, []).append(g)
    return out


def _asset_rows(val: PortfolioValuation, prior_prices: dict[int, Decimal]) -> list[dict[str, Any]]:
    total = money(val.total_value)
    out: list[dict[str, Any]] = []
    for a in val.assets:
        pos = a.position
        price = pos.current_price if pos.current_price is not None else ZERO
        prev = prior_prices.get(a.asset_id)
        out.append(
            {
                "asset_id": a.asset_id,
                "asset_symbol": a.symbol,
                "asset_type": a.asset_type,
                "quantity": pos.quantity,
                "current_price": price,
                "price_date": pos.price_date,
                "price_source": pos.price_source or "NONE",
                "current_value": money(pos.market_value),
                "cost_basis": money(pos.cost_basis),
                "avg_cost": pos.avg_cost,
                "realized_pl": money(pos.realized_pl),
                "unrealized_pl": money(pos.unrealized_pl),
                "total_pl": money(pos.realized_pl + pos.unrealized_pl),
                "allocation_pct": ratio(pos.market_value, total) or ZERO,
                "portfolio_total_value": total,
                "return_pct": ratio(pos.unrealized_pl, pos.cost_basis),
                "daily_return": ratio(price - prev, prev) if prev else None,
                "cumulative_return": ratio(pos.realized_pl + pos.unrealized_pl, a.buy_notional),
            }
        )
    return out


def _allocation_map(val: PortfolioValuation) -> dict[str, str]:
    total = money(val.total_value)
    by_type: dict[str, Decimal] = {}
    for a in val.assets:
        if a.current_value == 0:
            continue
        by_type[a.asset_type] = by_type.get(a.asset_type, ZERO) + a.current_value
    if val.cash_balance != 0:
        by_type["CASH"] = by_type.get("CASH", ZERO) + val.cash_balance
    out: dict[str, str] = {}
    for k in sorted(by_type):
        r = ratio(by_type[k], total)
        if r is not None:
            out[k] = as_json_number(r)
    return out


def _group_rows(
    asset_rows: list[dict[str, Any]],
    prior: dict[str, list[AssetGroupSnapshot]],
    flows: dict[str, Decimal],
    *,
    prev_date: Optional[dt.date],
    snapshot_date: dt.date,
) -> list[dict[str, Any]]:
    """
    Roll asset rows up by asset type.

    A group's period return is flow-adjusted by its own trade flows; a group with no
    row on the previous snapshot date starts from zero and has no return yet.
    """
    cfg = get_config()
    by_type: dict[str, list[dict[str, Any]]] = {}
    for r in asset_rows:
        by_type.setdefault(r["asset_type"], []).append(r)

    out: list[dict[str, Any]] = []
    for asset_type in sorted(by_type):
        rows = by_type[asset_type]
        value = sum((r["current_value"] for r in rows), ZERO)
        history = prior.get(asset_type, [])
        begin = None
        if history and prev_date is not None and history[-1].snapshot_date == prev_date:
            begin = Decimal(history[-1].total_value)
        flow = flows.get(asset_type, ZERO)
        twr = flow_adjusted_return(begin, value, flow)
        links = [(h.snapshot_date, None if h.twr_daily is None else Decimal(h.twr_daily)) for h in history]
        returns = [r for _d, r in links if r is not None] + ([twr] if twr is not None else [])
        out.append(
            {
                "asset_type": asset_type,
                "total_value": value,
                "cost_basis": sum((r["cost_basis"] for r in rows), ZERO),
                "realized_pl": sum((r["realized_pl"] for r in rows), ZERO),
                "unrealized_pl": sum((r["unrealized_pl"] for r in rows), ZERO),
                "allocation_pct": ratio(value, rows[0]["portfolio_total_value"]) or ZERO,
                "asset_count": len(rows),
                "active_asset_count": sum(1 for r in rows if r["quantity"] != 0),
                "net_trade_flow": flow,
                "twr_daily": twr,
                "twr_ytd": chained_return_for_window(links, snapshot_date, "YEAR", twr),
                "volatility": volatility(returns, window=cfg.volatility_window),
            }
        )
    return out


def _portfolio_row(
    val: PortfolioValuation,
    asset_rows: list[dict[str, Any]],
    history: list[PortfolioSnapshot],
    *,
    granularity: str,
    snapshot_date: dt.date,
    outstanding_units: Optional[Decimal],
    flows: Optional[list[tuple[dt.date, Decimal]]] = None,
) -> dict[str, Any]:
    cfg = get_config()
    invested = sum((r["current_value"] for r in asset_rows), ZERO)
    cash = money(val.cash_balance)
    total = invested + cash
    realized = sum((r["realized_pl"] for r in asset_rows), ZERO)
    unrealized = sum((r["unrealized_pl"] for r in asset_rows), ZERO)

    values = [(h.snapshot_date, Decimal(h.total_value)) for h in history]
    prev_total = values[-1][1] if values else None
    prev_date = values[-1][0] if values else None
    flows = flows or []
    net_flow = money(sum((a for fd, a in flows if prev_date is None or fd > prev_date), ZERO))
    ytd_base = base_point_for_window(values, snapshot_date, "YEAR")
    daily = period_return(prev_total, total)
    returns = [Decimal(h.daily_return) for h in history if h.daily_return is not None]
    if daily is not None:
        returns.append(daily)
    window = returns[-cfg.volatility_window:]
    twr = flow_adjusted_return(prev_total, total, net_flow)
    links = [(h.snapshot_date, None if h.twr_daily is None else Decimal(h.twr_daily)) for h in history]

    nav = None
    if outstanding_units is not None and outstanding_units > 0:
        nav = q(total / outstanding_units, NAV)

    return {
        "schema_version": PORTFOLIO_SNAPSHOT_SCHEMA_VERSION,
        "total_value": total,
        "invested_value": invested,
        "cash_balance": cash,
        "cost_basis": sum((r["cost_basis"] for r in asset_rows), ZERO),
        "realized_pl": realized,
        "unrealized_pl": unrealized,
        "total_pl": realized + unrealized,
        "daily_return": daily,
        "weekly_return": period_return(base_value_for_window(values, snapshot_date, "WEEK"), total),
        "monthly_return": period_return(base_value_for_window(values, snapshot_date, "MONTH"), total),
        "ytd_return": period_return(ytd_base[1] if ytd_base else None, total),
        "volatility": volatility(window, window=cfg.volatility_window),
        "max_drawdown": max_drawdown([v for _d, v in values] + [total]),
        "sharpe_ratio": sharpe_ratio(window, periods_per_year=PERIODS_PER_YEAR[granularity]),
        "net_external_flow": net_flow,
        "twr_daily": twr,
        "twr_weekly": chained_return_for_window(links, snapshot_date, "WEEK", twr),
        "twr_monthly": chained_return_for_window(links, snapshot_date, "MONTH", twr),
        "twr_ytd": chained_return_for_window(links, snapshot_date, "YEAR", twr),
        "mwr_ytd": money_weighted_return(ytd_base, flows, (snapshot_date, total)) if ytd_base else None,
        "asset_allocation_json": _allocation_map(val),
        "asset_count": sum(1 for r in asset_rows if r["quantity"] != 0),
        "outstanding_units": outstanding_units,
        "nav_per_unit": nav,
        "price_gap_count": len(val.gaps),
    }


def check_snapshot_totals(ps: PortfolioSnapshot, assets: list[AssetSnapshot]) -> None:
    expected = sum((Decimal(a.current_value) for a in assets), ZERO) + Decimal(ps.cash_balance)
    diff = abs(Decimal(ps.total_value) - expected)
    if diff > MONEY_TOLERANCE:
        raise IntegrityFault(
            f"Portfolio snapshot {ps.portfolio_id} {ps.snapshot_date} {ps.granularity}: total_value "
            f"{ps.total_value} != assets + cash {expected} (diff {diff})"
        )


def _write_snapshot(
    session: Session,
    *,
    portfolio_id: int,
    snapshot_date: dt.date,
    granularity: str,
    portfolio_values: dict[str, Any],
    asset_rows: list[dict[str, Any]],
) -> tuple[PortfolioSnapshot, list[AssetSnapshot], bool]:
    now = utcnow()
    ps = (
        session.query(PortfolioSnapshot)
        .filter(
            PortfolioSnapshot.portfolio_id == portfolio_id,
            PortfolioSnapshot.snapshot_date == snapshot_date,
            PortfolioSnapshot.granularity == granularity,
        )
        .one_or_none()
    )
    replaced = ps is not None
    if ps is None:
        ps = PortfolioSnapshot(portfolio_id=portfolio_id, snapshot_date=snapshot_date, granularity=granularity, created_at=now)
        session.add(ps)
    for name in PORTFOLIO_SNAPSHOT_FIELDS:
        setattr(ps, name, portfolio_values[name])
    ps.updated_at = now

    existing = {
        a.asset_id: a
        for a in session.query(AssetSnapshot)
        .filter(
            AssetSnapshot.portfolio_id == portfolio_id,
            AssetSnapshot.snapshot_date == snapshot_date,
            AssetSnapshot.granularity == granularity,
        )
        .all()
    }
    keep = {r["asset_id"] for r in asset_rows}
    for aid, row in existing.items():
        if aid not in keep:
            session.delete(row)
    out: list[AssetSnapshot] = []
    for r in asset_rows:
        a = existing.get(r["asset_id"])
        if a is None:
            a = AssetSnapshot(
                portfolio_id=portfolio_id,
                asset_id=r["asset_id"],
                snapshot_date=snapshot_date,
                granularity=granularity,
                created_at=now,
            )
            session.add(a)
        for name in ASSET_SNAPSHOT_FIELDS:
            setattr(a, name, r[name])
        a.updated_at = now
        out.append(a)
    session.flush()
    return ps, out, replaced


def _write_groups(
    session: Session,
    *,
    portfolio_id: int,
    snapshot_date: dt.date,
    granularity: str,
    group_rows: list[dict[str, Any]],
) -> list[AssetGroupSnapshot]:
    now = utcnow()
    existing = {
        g.asset_type: g
        for g in session.query(AssetGroupSnapshot)
        .filter(
            AssetGroupSnapshot.portfolio_id == portfolio_id,
            AssetGroupSnapshot.snapshot_date == snapshot_date,
            AssetGroupSnapshot.granularity == granularity,
        )
        .all()
    }
    keep = {r["asset_type"] for r in group_rows}
    for asset_type, row in existing.items():
        if asset_type not in keep:
            session.delete(row)
    out: list[AssetGroupSnapshot] = []
    for r in group_rows:
        g = existing.get(r["asset_type"])
        if g is None:
            g = AssetGroupSnapshot(
                portfolio_id=portfolio_id,
                asset_type=r["asset_type"],
                snapshot_date=snapshot_date,
                granularity=granularity,
                created_at=now,
            )
            session.add(g)
        for name in ASSET_GROUP_SNAPSHOT_FIELDS:
            setattr(g, name, r[name])
        g.updated_at = now
        out.append(g)
    session.flush()
    return out


def create_or_recalculate_snapshot(
    session: Session,
    *,
    portfolio_id: int,
    snapshot_date: dt.date,
    granularity: str,
    prices: Optional[PriceSource] = None,
    trigger: str = "MANUAL",
    parent_execution_id: Optional[str] = None,
) -> SnapshotResult:
    """
    Compute the asset and portfolio snapshots of one (portfolio, date, granularity)
    key from a point-in-time valuation and persist them in one transaction.

    A second call for the same key overwrites every field of the existing rows.
    Overlapping calls for the same key fail fast with SnapshotInProgress.
    """
    g = normalize_granularity(granularity)
    p = get_portfolio(session, portfolio_id)
    ex = start_execution(
        session,
        portfolio_id=portfolio_id,
        snapshot_date=snapshot_date,
        granularity=g,
        kind="SINGLE",
        trigger=trigger,
        parent_execution_id=parent_execution_id,
    )
    mark_in_progress(session, ex.execution_id)
    try:
        val = value_portfolio(session, portfolio_id, snapshot_date, prices)
        asset_rows = _asset_rows(val, _prior_asset_prices(session, portfolio_id, g, snapshot_date))
        units = units_outstanding_as_of(session, portfolio_id, snapshot_date) if p.is_fund else None
        history = _prior_snapshots(session, portfolio_id, g, snapshot_date)
        prev_date = history[-1].snapshot_date if history else None
        values = _portfolio_row(
            val,
            asset_rows,
            history,
            granularity=g,
            snapshot_date=snapshot_date,
            outstanding_units=units,
            flows=_external_flows(session, portfolio_id, snapshot_date),
        )
        group_rows = _group_rows(
            asset_rows,
            _prior_groups(session, portfolio_id, g, snapshot_date),
            _group_trade_flows(session, portfolio_id, prev_date, snapshot_date),
            prev_date=prev_date,
            snapshot_date=snapshot_date,
        )
        ps, assets, replaced = _write_snapshot(
            session,
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            granularity=g,
            portfolio_values=values,
            asset_rows=asset_rows,
        )
        groups = _write_groups(
            session,
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            granularity=g,
            group_rows=group_rows,
        )
        check_snapshot_totals(ps, assets)
        session.commit()
    except Exception as e:
        session.rollback()
        if isinstance(e, IntegrityFault):
            log.error("Snapshot integrity fault portfolio=%s date=%s %s: %s", portfolio_id, snapshot_date, g, e)
        else:
            log.warning("Snapshot failed portfolio=%s date=%s %s: %s", portfolio_id, snapshot_date, g, e)
        finish_execution(
            session,
            ex.execution_id,
            status="failed",
            error_message=f"{type(e).__name__}: {e}",
            failed_portfolios=1,
            successful_portfolios=0,
        )
        raise

    finish_execution(
        session,
        ex.execution_id,
        status="completed",
        details={
            "gaps": val.gaps,
            "asset_count": values["asset_count"],
            "total_value": as_json_number(values["total_value"]),
            "replaced": replaced,
        },
        successful_portfolios=1,
        failed_portfolios=0,
        total_snapshots=1 + len(assets),
    )
    if val.gaps:
        log.warning(
            "Snapshot portfolio=%s date=%s %s used %s carried-forward price(s)",
            portfolio_id,
            snapshot_date,
            g,
            len(val.gaps),
        )
    return SnapshotResult(
        execution_id=ex.execution_id,
        portfolio_snapshot=ps,
        asset_snapshots=assets,
        asset_groups=groups,
        gaps=val.gaps,
        replaced=replaced,
    )


def get_portfolio_snapshot(session: Session, *, portfolio_id: int, snapshot_date: dt.date, granularity: str) -> Optional[PortfolioSnapshot]:
    return (
        session.query(PortfolioSnapshot)
        .filter(
            PortfolioSnapshot.portfolio_id == portfolio_id,
            PortfolioSnapshot.snapshot_date == snapshot_date,
            PortfolioSnapshot.granularity == normalize_granularity(granularity),
        )
        .one_or_none()
    )


def list_portfolio_snapshots(
    session: Session,
    *,
    portfolio_id: int,
    granularity: str,
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
) -> list[PortfolioSnapshot]:
    qry = session.query(PortfolioSnapshot).filter(
        PortfolioSnapshot.portfolio_id == portfolio_id,
        PortfolioSnapshot.granularity == normalize_granularity(granularity),
    )
    if start is not None:
        qry = qry.filter(PortfolioSnapshot.snapshot_date >= start)
    if end is not None:
        qry = qry.filter(PortfolioSnapshot.snapshot_date <= end)
    return qry.order_by(PortfolioSnapshot.snapshot_date.asc()).all()


def list_asset_snapshots(session: Session, *, portfolio_id: int, snapshot_date: dt.date, granularity: str) -> list[AssetSnapshot]:
    return (
        session.query(AssetSnapshot)
        .filter(
            AssetSnapshot.portfolio_id == portfolio_id,
            AssetSnapshot.snapshot_date == snapshot_date,
            AssetSnapshot.granularity == normalize_granularity(granularity),
        )
        .order_by(AssetSnapshot.asset_symbol.asc())
        .all()
    )


def list_asset_group_snapshots(session: Session, *, portfolio_id: int, snapshot_date: dt.date, granularity: str) -> list[AssetGroupSnapshot]:
    return (
        session.query(AssetGroupSnapshot)
        .filter(
            AssetGroupSnapshot.portfolio_id == portfolio_id,
            AssetGroupSnapshot.snapshot_date == snapshot_date,
            AssetGroupSnapshot.granularity == normalize_granularity(granularity),
        )
        .order_by(AssetGroupSnapshot.asset_type.asc())
        .all()
    )


def allocation_timeline(
    session: Session,
    *,
    portfolio_id: int,
    start: dt.date,
    end: dt.date,
    granularity: str = "DAILY",
) -> list[dict[str, Any]]:
    if end < start:
        raise ValidationError("end must be on or after start")
    get_portfolio(session, portfolio_id)
    return [
        {
            "date": ps.snapshot_date.isoformat(),
            "total_value": as_json_number(ps.total_value),
            "allocation": dict(ps.asset_allocation_json or {}),
        }
        for ps in list_portfolio_snapshots(session, portfolio_id=portfolio_id, granularity=granularity, start=start, end=end)
    ]


def portfolio_snapshot_as_json(ps: PortfolioSnapshot) -> dict[str, Any]:
    out: dict[str, Any] = {
        "portfolio_id": ps.portfolio_id,
        "snapshot_date": ps.snapshot_date.isoformat(),
        "granularity": ps.granularity,
    }
    for name in PORTFOLIO_SNAPSHOT_FIELDS:
        v = getattr(ps, name)
        out[name] = as_json_number(v) if isinstance(v, Decimal) else v
    return out


def asset_snapshot_as_json(a: AssetSnapshot) -> dict[str, Any]:
    out: dict[str, Any] = {"asset_id": a.asset_id, "snapshot_date": a.snapshot_date.isoformat(), "granularity": a.granularity}
    for name in ASSET_SNAPSHOT_FIELDS:
        v = getattr(a, name)
        if isinstance(v, Decimal):
            v = as_json_number(v)
        elif isinstance(v, dt.date):
            v = v.isoformat()
        out[name] = v
    return out


def asset_group_snapshot_as_json(g: AssetGroupSnapshot) -> dict[str, Any]:
    out: dict[str, Any] = {"asset_type": g.asset_type, "snapshot_date": g.snapshot_date.isoformat(), "granularity": g.granularity}
    for name in ASSET_GROUP_SNAPSHOT_FIELDS:
        v = getattr(g, name)
        out[name] = as_json_number(v) if isinstance(v, Decimal) else v
    return out
