from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from folioledger.core.errors import NotFoundError
from folioledger.core.funds import subscribe, verify_unit_invariant
from folioledger.core.portfolio_store import create_account, create_asset, create_portfolio
from folioledger.core.recovery import rebuild_portfolio, verify_portfolio
from folioledger.core.trades import record_trade
from folioledger.db.models import AuditLog, TradeMatch, TradeMatchState


def _trades(session, p):
    a = create_asset(session, symbol="ABC")
    b = create_asset(session, symbol="DEF")
    for asset in (a, b):
        record_trade(session, portfolio_id=p.id, asset_id=asset.id, side="BUY", quantity=10, price=50, trade_date=dt.date(2024, 1, 2))
        record_trade(session, portfolio_id=p.id, asset_id=asset.id, side="SELL", quantity=4, price=60, trade_date=dt.date(2024, 1, 3))
    return a, b


def test_verify_then_rebuild_repairs_tampered_state(session):
    p = create_portfolio(session, name="Repair")
    a, b = _trades(session, p)
    assert verify_portfolio(session, portfolio_id=p.id)["ok"] is True

    session.query(TradeMatch).filter(TradeMatch.asset_id == b.id).delete()
    st = session.query(TradeMatchState).order_by(TradeMatchState.trade_id.asc()).first()
    st.matched_quantity = Decimal("7")
    session.commit()

    report = verify_portfolio(session, portfolio_id=p.id)
    assert report["ok"] is False
    assert report["assets_checked"] == 2
    assert set(report["issues"]) == {str(a.id), str(b.id)}

    out = rebuild_portfolio(session, portfolio_id=p.id, actor="ops")
    assert [x["asset_id"] for x in out["assets"]] == [a.id, b.id]
    assert all(x["verified"] for x in out["assets"])
    assert out["holdings"] is None
    assert verify_portfolio(session, portfolio_id=p.id)["ok"] is True
    assert session.query(TradeMatch).count() == 2
    assert session.query(AuditLog).filter(AuditLog.action == "REBUILD_PORTFOLIO").count() == 1


def test_rebuild_fund_replays_holdings(session):
    p = create_portfolio(session, name="Fund", is_fund=True)
    acct = create_account(session, name="dana")
    subscribe(session, portfolio_id=p.id, account_id=acct.id, amount="300", effective_date=dt.date(2024, 1, 2))
    p.total_outstanding_units = Decimal("1")
    session.commit()

    out = rebuild_portfolio(session, portfolio_id=p.id)
    assert out["assets"] == []
    assert out["holdings"]["holdings"] == 1
    assert verify_unit_invariant(session, p.id) == Decimal("300")


def test_unknown_portfolio(session):
    with pytest.raises(NotFoundError):
        verify_portfolio(session, portfolio_id=42)
    with pytest.raises(NotFoundError):
        rebuild_portfolio(session, portfolio_id=42)
