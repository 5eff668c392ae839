from __future__ import annotations

import datetime as dt
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import func

import folioledger.core.trades as trades_mod
from folioledger.core.errors import ConcurrencyConflict, ValidationError
from folioledger.core.funds import subscribe, verify_unit_invariant
from folioledger.core.portfolio_store import create_account, create_asset, create_portfolio
from folioledger.core.positions import verify_asset_ledger
from folioledger.core.trades import record_trade
from folioledger.db.models import AssetLedger, FundUnitTransaction, InvestorHolding, Trade, TradeMatch, TradeMatchState
from folioledger.utils import locks

D = dt.date(2024, 5, 6)


def _seed_buy(session_factory):
    with session_factory() as s:
        p = create_portfolio(s, name="Shared")
        a = create_asset(s, symbol="ACME")
        buy = record_trade(s, portfolio_id=p.id, asset_id=a.id, side="BUY", quantity=10, price=100, trade_date=D)
        return p.id, a.id, buy.trade_id


def test_concurrent_sells_cannot_oversell(session_factory):
    pid, aid, buy_id = _seed_buy(session_factory)
    start = threading.Barrier(2)

    def sell(_n):
        start.wait()
        with session_factory() as s:
            try:
                record_trade(s, portfolio_id=pid, asset_id=aid, side="SELL", quantity=6, price=110, trade_date=D)
                return "ok"
            except (ValidationError, ConcurrencyConflict) as e:
                return type(e).__name__

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(sell, range(2)))

    assert outcomes.count("ok") == 1
    with session_factory() as s:
        assert s.query(Trade).filter(Trade.side == "SELL").count() == 1
        matched = s.query(func.sum(TradeMatch.quantity)).scalar()
        assert Decimal(matched) == Decimal("6")
        assert Decimal(s.get(TradeMatchState, buy_id).matched_quantity) <= Decimal("10")
        assert verify_asset_ledger(s, pid, aid).ok


def test_ledger_written_elsewhere_is_a_conflict(session_factory, monkeypatch):
    pid, aid, _buy_id = _seed_buy(session_factory)
    original = trades_mod._ensure_ledger

    def ensure_then_bump(session, portfolio_id, asset_id):
        ledger = original(session, portfolio_id, asset_id)
        # Another writer advances the ledger after this session has read it.
        with session_factory() as other:
            other.query(AssetLedger).filter(AssetLedger.id == ledger.id).update(
                {AssetLedger.version: AssetLedger.version + 1}, synchronize_session=False
            )
            other.commit()
        return ledger

    monkeypatch.setattr(trades_mod, "_ensure_ledger", ensure_then_bump)
    with session_factory() as s:
        with pytest.raises(ConcurrencyConflict) as ei:
            record_trade(s, portfolio_id=pid, asset_id=aid, side="SELL", quantity=2, price=110, trade_date=D)
        assert ei.value.retryable is True

    monkeypatch.undo()
    with session_factory() as s:
        assert s.query(Trade).count() == 1
        assert s.query(TradeMatch).count() == 0
        res = record_trade(s, portfolio_id=pid, asset_id=aid, side="SELL", quantity=2, price=110, trade_date=D)
        assert res.status == "CLOSED"


def test_concurrent_subscriptions_keep_units_consistent(session_factory):
    with session_factory() as s:
        p = create_portfolio(s, name="Pool", is_fund=True, seed_nav_per_unit="1.0")
        accounts = [create_account(s, name=f"investor-{n}").id for n in range(4)]
        pid = p.id
    start = threading.Barrier(len(accounts))

    def sub(account_id):
        start.wait()
        with session_factory() as s:
            return subscribe(s, portfolio_id=pid, account_id=account_id, amount="100", effective_date=D).units

    with ThreadPoolExecutor(max_workers=len(accounts)) as pool:
        units = list(pool.map(sub, accounts))

    assert units == [Decimal("100")] * 4
    with session_factory() as s:
        assert verify_unit_invariant(s, pid) == Decimal("400")
        assert s.query(FundUnitTransaction).count() == 4
        assert s.query(InvestorHolding).count() == 4


def test_keyed_lock_serializes_and_forgets_idle_keys():
    key = ("snapshot-exec", 1, D, "DAILY")
    inside = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def holder():
        with locks.keyed_lock(key):
            inside.set()
            release.wait(5)
            order.append("holder")

    def waiter():
        inside.wait(5)
        with locks.keyed_lock(key):
            order.append("waiter")

    t1 = threading.Thread(target=holder)
    t2 = threading.Thread(target=waiter)
    t1.start()
    t2.start()
    inside.wait(5)
    assert key in locks._LOCKS
    release.set()
    t1.join(5)
    t2.join(5)

    assert order == ["holder", "waiter"]
    assert key not in locks._LOCKS
    with locks.keyed_lock(("other",)):
        assert ("other",) in locks._LOCKS
    assert ("other",) not in locks._LOCKS
