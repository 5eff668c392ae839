from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from folioledger.core.errors import IntegrityFault, ValidationError
from folioledger.core.executions import get_execution
from folioledger.core.portfolio_store import create_asset, create_portfolio, record_cash_flow, record_price
from folioledger.core.pricing import MappingPriceSource
from folioledger.core.snapshots import (
    allocation_timeline,
    asset_snapshot_as_json,
    check_snapshot_totals,
    create_or_recalculate_snapshot,
    list_asset_group_snapshots,
    list_asset_snapshots,
    normalize_granularity,
    portfolio_snapshot_as_json,
)
from folioledger.core.trades import record_trade
from folioledger.db.models import AssetGroupSnapshot, AssetSnapshot, PortfolioSnapshot

MON = dt.date(2024, 3, 4)


def _day(n: int) -> dt.date:
    return MON + dt.timedelta(days=n)


def _portfolio(session, prices: dict[int, str]):
    p = create_portfolio(session, name="Core")
    a = create_asset(session, symbol="ACME", asset_type="STOCK")
    record_cash_flow(session, portfolio_id=p.id, flow_date=_day(0), flow_type="DEPOSIT", amount="1000")
    record_trade(session, portfolio_id=p.id, asset_id=a.id, side="BUY", quantity=10, price=100, trade_date=_day(0))
    for n, px in prices.items():
        record_price(session, asset_id=a.id, price_date=_day(n), price=px)
    return p, a


def _snap(session, p, n, granularity="DAILY", **kw):
    return create_or_recalculate_snapshot(session, portfolio_id=p.id, snapshot_date=_day(n), granularity=granularity, **kw)


def test_snapshot_totals_and_fields(session):
    p, a = _portfolio(session, {0: "100"})
    record_cash_flow(session, portfolio_id=p.id, flow_date=_day(0), flow_type="DEPOSIT", amount="500")
    res = _snap(session, p, 0)

    ps = res.portfolio_snapshot
    assert ps.total_value == Decimal("1500.00")
    assert ps.invested_value == Decimal("1000.00")
    assert ps.cash_balance == Decimal("500.00")
    assert ps.cost_basis == Decimal("1000.00")
    assert ps.unrealized_pl == 0
    assert ps.asset_count == 1
    assert ps.daily_return is None
    assert ps.max_drawdown == 0
    assert ps.price_gap_count == 0
    assert ps.outstanding_units is None and ps.nav_per_unit is None
    assert set(ps.asset_allocation_json) == {"CASH", "STOCK"}
    assert Decimal(ps.asset_allocation_json["STOCK"]) == Decimal("0.66666667")

    (asset,) = res.asset_snapshots
    assert asset.asset_symbol == "ACME"
    assert asset.price_source == "MARKET"
    assert asset.current_value == Decimal("1000.00")
    assert asset.allocation_pct == Decimal("0.66666667")
    assert asset.portfolio_total_value == Decimal("1500.00")
    check_snapshot_totals(ps, res.asset_snapshots)

    ex = get_execution(session, res.execution_id)
    assert ex.status == "completed"
    assert ex.kind == "SINGLE"
    assert ex.total_snapshots == 2
    assert ex.details_json["gaps"] == []


def test_recompute_is_idempotent(session):
    p, a = _portfolio(session, {0: "100", 1: "110"})
    _snap(session, p, 0)
    first = _snap(session, p, 1)
    first_json = portfolio_snapshot_as_json(first.portfolio_snapshot)
    first_assets = [asset_snapshot_as_json(x) for x in first.asset_snapshots]

    second = _snap(session, p, 1)
    assert second.replaced is True
    assert first.replaced is False
    assert portfolio_snapshot_as_json(second.portfolio_snapshot) == first_json
    assert [asset_snapshot_as_json(x) for x in second.asset_snapshots] == first_assets
    assert session.query(PortfolioSnapshot).filter(PortfolioSnapshot.snapshot_date == _day(1)).count() == 1
    assert session.query(AssetSnapshot).filter(AssetSnapshot.snapshot_date == _day(1)).count() == 1


def test_recompute_picks_up_backdated_trade(session):
    p, a = _portfolio(session, {0: "100", 1: "100"})
    before = _snap(session, p, 1).portfolio_snapshot.total_value
    record_cash_flow(session, portfolio_id=p.id, flow_date=_day(0), flow_type="DEPOSIT", amount="200")
    record_trade(session, portfolio_id=p.id, asset_id=a.id, side="BUY", quantity=2, price=100, trade_date=_day(0))

    res = _snap(session, p, 1)
    assert res.replaced is True
    assert res.portfolio_snapshot.total_value == before + Decimal("200")
    assert res.asset_snapshots[0].quantity == Decimal("12")


def test_returns_volatility_and_drawdown(session):
    p, a = _portfolio(session, {0: "100", 1: "110", 2: "99"})
    _snap(session, p, 0)
    d1 = _snap(session, p, 1).portfolio_snapshot
    d2 = _snap(session, p, 2).portfolio_snapshot

    assert d1.daily_return == Decimal("0.1")
    assert d1.ytd_return == Decimal("0.1")
    assert d2.total_value == Decimal("990.00")
    assert d2.daily_return == Decimal("-0.1")
    # Direct comparison with the first snapshot of the week.
    assert d2.weekly_return == Decimal("-0.01")
    assert d2.monthly_return == Decimal("-0.01")
    assert d2.max_drawdown == Decimal("0.1")
    assert d2.volatility == Decimal("0.14142136")
    assert d2.sharpe_ratio is not None

    assets = list_asset_snapshots(session, portfolio_id=p.id, snapshot_date=_day(2), granularity="DAILY")
    assert assets[0].daily_return == Decimal("-0.1")
    assert assets[0].return_pct == Decimal("-0.01")
    assert assets[0].cumulative_return == Decimal("-0.01")


def test_weekly_return_uses_prior_week_close(session):
    p, a = _portfolio(session, {-1: "95", 0: "100", 7: "120"})
    # Sunday close before the week, then the following Monday.
    record_cash_flow(session, portfolio_id=p.id, flow_date=_day(-1), flow_type="DEPOSIT", amount="1")
    _snap(session, p, -1, granularity="WEEKLY")
    nxt = _snap(session, p, 7, granularity="WEEKLY").portfolio_snapshot
    assert nxt.total_value == Decimal("1201.00")
    assert nxt.weekly_return == Decimal("1200")


def test_missing_price_is_carried_forward_and_recorded(session):
    p, a = _portfolio(session, {0: "100", 1: "101", 3: "103", 4: "104"})
    results = [_snap(session, p, n) for n in range(5)]

    gap_day = results[2]
    (asset,) = gap_day.asset_snapshots
    assert asset.price_source == "CARRIED_FORWARD"
    assert asset.price_date == _day(1)
    assert asset.current_price == Decimal("101")
    assert gap_day.portfolio_snapshot.price_gap_count == 1
    assert gap_day.gaps[0]["symbol"] == "ACME"
    assert gap_day.gaps[0]["age_days"] == 1
    assert gap_day.gaps[0]["stale"] is False

    ex = get_execution(session, gap_day.execution_id)
    assert ex.status == "completed"
    assert [g["price_date"] for g in ex.details_json["gaps"]] == [_day(1).isoformat()]

    for n in (0, 1, 3, 4):
        assert results[n].gaps == []
        assert get_execution(session, results[n].execution_id).details_json["gaps"] == []


def test_staleness_threshold_marks_old_prices(session, ledger_config):
    ledger_config.max_price_staleness_days = 2
    p, a = _portfolio(session, {0: "100"})
    res = _snap(session, p, 5)
    assert res.gaps[0]["age_days"] == 5
    assert res.gaps[0]["stale"] is True


def test_explicit_price_source(session):
    p, a = _portfolio(session, {})
    prices = MappingPriceSource({(a.id, _day(1)): Decimal("150")})
    res = _snap(session, p, 1, prices=prices)
    assert res.portfolio_snapshot.invested_value == Decimal("1500.00")
    assert res.gaps == []


def test_check_snapshot_totals_detects_drift():
    ps = PortfolioSnapshot(
        portfolio_id=1,
        snapshot_date=MON,
        granularity="DAILY",
        total_value=Decimal("100.00"),
        cash_balance=Decimal("10.00"),
    )
    ok = [AssetSnapshot(current_value=Decimal("89.99"))]
    check_snapshot_totals(ps, ok)
    with pytest.raises(IntegrityFault):
        check_snapshot_totals(ps, [AssetSnapshot(current_value=Decimal("80.00"))])


def test_unknown_granularity_rejected(session):
    p, a = _portfolio(session, {0: "100"})
    with pytest.raises(ValidationError):
        _snap(session, p, 0, granularity="HOURLY")
    assert normalize_granularity(" weekly ") == "WEEKLY"


def test_allocation_timeline(session):
    p, a = _portfolio(session, {0: "100", 1: "300"})
    _snap(session, p, 0)
    _snap(session, p, 1)
    _snap(session, p, 1, granularity="MONTHLY")

    rows = allocation_timeline(session, portfolio_id=p.id, start=_day(0), end=_day(1))
    assert [r["date"] for r in rows] == [_day(0).isoformat(), _day(1).isoformat()]
    assert rows[0]["allocation"] == {"STOCK": "1.00000000"}
    assert rows[1]["total_value"] == "3000.00"
    with pytest.raises(ValidationError):
        allocation_timeline(session, portfolio_id=p.id, start=_day(1), end=_day(0))


def test_time_weighted_return_strips_deposits(session):
    p, a = _portfolio(session, {0: "100", 1: "110", 2: "110"})
    d0 = _snap(session, p, 0).portfolio_snapshot
    d1 = _snap(session, p, 1).portfolio_snapshot
    record_cash_flow(session, portfolio_id=p.id, flow_date=_day(2), flow_type="DEPOSIT", amount="550")
    d2 = _snap(session, p, 2).portfolio_snapshot

    assert d0.net_external_flow == Decimal("1000.00")
    assert d0.twr_daily is None
    assert d1.twr_daily == Decimal("0.1")
    assert d2.total_value == Decimal("1650.00")
    assert d2.net_external_flow == Decimal("550.00")
    assert d2.daily_return == Decimal("0.5")
    assert d2.twr_daily == 0
    assert d2.ytd_return == Decimal("0.65")
    assert d2.twr_weekly == Decimal("0.1")
    assert d2.twr_ytd == Decimal("0.1")
    assert d2.mwr_ytd == Decimal("0.1")
    assert d0.mwr_ytd is None
    assert portfolio_snapshot_as_json(d2)["twr_ytd"] == "0.10000000"


def test_asset_group_rollup(session):
    p, a = _portfolio(session, {0: "100", 1: "110"})
    bnd = create_asset(session, symbol="BND", asset_type="BOND")
    record_cash_flow(session, portfolio_id=p.id, flow_date=_day(0), flow_type="DEPOSIT", amount="1000")
    record_trade(session, portfolio_id=p.id, asset_id=bnd.id, side="BUY", quantity=5, price=100, trade_date=_day(0))
    record_price(session, asset_id=bnd.id, price_date=_day(0), price="100")
    _snap(session, p, 0)
    record_trade(session, portfolio_id=p.id, asset_id=bnd.id, side="BUY", quantity=5, price=100, trade_date=_day(1))
    res = _snap(session, p, 1)

    assert res.portfolio_snapshot.total_value == Decimal("2100.00")
    assert res.portfolio_snapshot.twr_daily == Decimal("0.05")
    bond, stock = res.asset_groups
    assert (bond.asset_type, stock.asset_type) == ("BOND", "STOCK")
    assert bond.total_value == Decimal("1000.00")
    assert bond.net_trade_flow == Decimal("500.00")
    assert bond.twr_daily == 0
    assert bond.allocation_pct == Decimal("0.47619048")
    assert stock.total_value == Decimal("1100.00")
    assert stock.net_trade_flow == 0
    assert stock.twr_daily == Decimal("0.1")
    assert stock.twr_ytd == Decimal("0.1")
    assert stock.allocation_pct == Decimal("0.52380952")
    assert stock.asset_count == 1 and stock.active_asset_count == 1
    assert [g["asset_type"] for g in res.as_json()["asset_groups"]] == ["BOND", "STOCK"]

    _snap(session, p, 1)
    rows = list_asset_group_snapshots(session, portfolio_id=p.id, snapshot_date=_day(1), granularity="DAILY")
    assert [g.asset_type for g in rows] == ["BOND", "STOCK"]
    assert session.query(AssetGroupSnapshot).filter(AssetGroupSnapshot.snapshot_date == _day(1)).count() == 2
