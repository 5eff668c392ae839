from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

import folioledger.core.trades as trades_mod
from folioledger.core.errors import ConcurrencyConflict, IntegrityFault, NotFoundError, ValidationError
from folioledger.core.portfolio_store import cash_balance_as_of, create_asset, create_portfolio, record_cash_flow
from folioledger.core.positions import get_position, verify_asset_ledger
from folioledger.core.trades import ledger_version, list_matches, record_trade, rematch_asset
from folioledger.db.models import AssetLedger, AuditLog, CashFlow, Trade, TradeMatch, TradeMatchState


def _setup(session, policy="FIFO"):
    p = create_portfolio(session, name="Main", matching_policy=policy)
    a = create_asset(session, symbol="ACME")
    return p, a


def _trade(session, p, a, side, qty, price, day, **kw):
    return record_trade(
        session,
        portfolio_id=p.id,
        asset_id=a.id,
        side=side,
        quantity=qty,
        price=price,
        trade_date=dt.date(2024, 1, day),
        actor="test",
        **kw,
    )


def test_fifo_sell_realizes_against_oldest_buys(session):
    p, a = _setup(session)
    b1 = _trade(session, p, a, "BUY", 10, 100, 2)
    b2 = _trade(session, p, a, "BUY", 5, 120, 3)
    s = _trade(session, p, a, "SELL", 12, 130, 4)

    assert b1.status == "OPEN" and b1.matches == []
    assert s.status == "CLOSED"
    assert s.remaining_quantity == Decimal("0")
    assert s.realized_pl == Decimal("320.00")
    assert [(m.buy_trade_id, m.quantity) for m in s.matches] == [(b1.trade_id, Decimal("10")), (b2.trade_id, Decimal("2"))]

    states = {st.trade_id: st for st in session.query(TradeMatchState).all()}
    assert states[b1.trade_id].status == "CLOSED"
    assert states[b2.trade_id].status == "PARTIAL"
    assert Decimal(states[b2.trade_id].matched_quantity) == Decimal("2")

    pos = get_position(session, p.id, a.id, price=130)
    assert pos.quantity == Decimal("3")
    assert pos.avg_cost == Decimal("120")
    assert pos.realized_pl == Decimal("320.00")
    assert pos.unrealized_pl == Decimal("30.00")


def test_lifo_portfolio_uses_newest_lot(session):
    p, a = _setup(session, policy="LIFO")
    _trade(session, p, a, "BUY", 10, 100, 2)
    _trade(session, p, a, "BUY", 5, 120, 3)
    s = _trade(session, p, a, "SELL", 12, 130, 4)

    assert s.realized_pl == Decimal("260.00")
    assert {m.policy for m in list_matches(session, portfolio_id=p.id)} == {"LIFO"}
    assert get_position(session, p.id, a.id, price=100).avg_cost == Decimal("100")


@pytest.mark.parametrize(
    "qty,price,fee",
    [
        (0, 100, 0),
        (10, 0, 0),
        (-1, 100, 0),
        (10, 100, -1),
    ],
)
def test_invalid_trade_rejected_and_nothing_persisted(session, qty, price, fee):
    p, a = _setup(session)
    with pytest.raises(ValidationError):
        _trade(session, p, a, "BUY", qty, price, 2, fee=fee)
    assert session.query(Trade).count() == 0
    assert session.query(CashFlow).count() == 0
    assert session.query(AssetLedger).count() == 0


def test_short_sale_rejected_without_side_effects(session):
    p, a = _setup(session)
    _trade(session, p, a, "BUY", 5, 100, 2)
    version = ledger_version(session, portfolio_id=p.id, asset_id=a.id)

    with pytest.raises(ValidationError, match="short"):
        _trade(session, p, a, "SELL", 6, 100, 3)

    assert session.query(Trade).count() == 1
    assert session.query(TradeMatch).count() == 0
    assert session.query(CashFlow).count() == 1
    assert ledger_version(session, portfolio_id=p.id, asset_id=a.id) == version


def test_settlement_cash_flows(session):
    p, a = _setup(session)
    record_cash_flow(session, portfolio_id=p.id, flow_date=dt.date(2024, 1, 1), flow_type="DEPOSIT", amount="5000")
    _trade(session, p, a, "BUY", 10, 100, 2, fee="1.50")
    _trade(session, p, a, "SELL", 4, 110, 3, fee="1", tax="0.40")

    flows = session.query(CashFlow).order_by(CashFlow.id.asc()).all()
    assert [(f.flow_type, Decimal(f.amount)) for f in flows] == [
        ("DEPOSIT", Decimal("5000.00")),
        ("TRADE_BUY", Decimal("-1001.50")),
        ("TRADE_SELL", Decimal("438.60")),
    ]
    assert {f.reference_type for f in flows[1:]} == {"TRADE"}
    assert cash_balance_as_of(session, p.id, dt.date(2024, 1, 2)) == Decimal("3998.50")
    assert cash_balance_as_of(session, p.id, dt.date(2024, 1, 3)) == Decimal("4437.10")


def test_backdated_trade_triggers_full_rematch(session):
    p, a = _setup(session)
    _trade(session, p, a, "BUY", 10, 100, 10)
    _trade(session, p, a, "SELL", 5, 110, 20)
    early = _trade(session, p, a, "BUY", 10, 90, 5)

    assert early.rematched is True
    assert early.status == "PARTIAL"
    assert early.remaining_quantity == Decimal("5")
    assert early.realized_pl == Decimal("0")

    matches = list_matches(session, portfolio_id=p.id, asset_id=a.id)
    assert len(matches) == 1
    assert matches[0].buy_trade_id == early.trade_id
    assert Decimal(matches[0].realized_pl) == Decimal("100.00")

    ledger = session.query(AssetLedger).one()
    assert ledger.last_rematch_at is not None
    assert ledger.last_trade_date == dt.date(2024, 1, 20)
    assert ledger.trade_count == 3
    assert verify_asset_ledger(session, p.id, a.id).ok


def test_backdated_sell_that_would_go_short_is_rejected(session):
    p, a = _setup(session)
    _trade(session, p, a, "BUY", 10, 100, 10)
    with pytest.raises(ValidationError):
        _trade(session, p, a, "SELL", 5, 110, 5)
    assert session.query(Trade).count() == 1
    assert session.query(TradeMatch).count() == 0


def test_expected_version_mismatch_is_a_conflict(session):
    p, a = _setup(session)
    _trade(session, p, a, "BUY", 10, 100, 2)
    v = ledger_version(session, portfolio_id=p.id, asset_id=a.id)

    with pytest.raises(ConcurrencyConflict) as ei:
        _trade(session, p, a, "SELL", 1, 100, 3, expected_version=v + 1)
    assert ei.value.retryable is True
    assert session.query(Trade).count() == 1

    ok = _trade(session, p, a, "SELL", 1, 100, 3, expected_version=v)
    assert ok.ledger_version > v
    assert ledger_version(session, portfolio_id=p.id, asset_id=a.id) == ok.ledger_version


def test_integrity_fault_flags_trade_unmatched(session, monkeypatch):
    p, a = _setup(session)
    _trade(session, p, a, "BUY", 10, 100, 2)

    def boom(trades, matched):
        raise IntegrityFault("matched quantity out of range")

    monkeypatch.setattr(trades_mod, "check_matched_quantities", boom)
    with pytest.raises(IntegrityFault):
        _trade(session, p, a, "SELL", 4, 110, 3)

    flagged = session.query(Trade).filter(Trade.side == "SELL").one()
    state = session.get(TradeMatchState, flagged.id)
    assert state.status == "UNMATCHED"
    assert "out of range" in state.note
    assert session.query(TradeMatch).count() == 0
    assert session.query(AuditLog).filter(AuditLog.action == "RECORD_TRADE_UNMATCHED").count() == 1
    # The flagged trade stays out of positions until the asset is rematched.
    assert get_position(session, p.id, a.id, price=100).quantity == Decimal("10")

    monkeypatch.undo()
    res = rematch_asset(session, portfolio_id=p.id, asset_id=a.id, actor="test")
    assert res.matches_created == 1
    assert res.open_quantity == Decimal("6")
    assert session.get(TradeMatchState, flagged.id).status == "CLOSED"
    assert get_position(session, p.id, a.id, price=100).quantity == Decimal("6")
    cf = session.query(CashFlow).filter(CashFlow.reference_type == "TRADE", CashFlow.reference_id == flagged.id).one()
    assert cf.flow_type == "TRADE_SELL"
    assert Decimal(cf.amount) == Decimal("440.00")
    readmit = session.query(AuditLog).filter(AuditLog.action == "READMIT_TRADE").one()
    assert readmit.entity_id == str(flagged.id)
    assert readmit.actor == "test"


def test_backdated_trade_leaves_flagged_trade_out(session, monkeypatch):
    p, a = _setup(session)
    _trade(session, p, a, "BUY", 10, 100, 2)

    def boom(trades, matched):
        raise IntegrityFault("matched quantity out of range")

    monkeypatch.setattr(trades_mod, "check_matched_quantities", boom)
    with pytest.raises(IntegrityFault):
        _trade(session, p, a, "SELL", 4, 110, 3)
    monkeypatch.undo()
    flagged = session.query(Trade).filter(Trade.side == "SELL").one()

    res = _trade(session, p, a, "BUY", 1, 90, 1)
    assert res.rematched is True
    assert session.get(TradeMatchState, flagged.id).status == "UNMATCHED"
    assert session.query(TradeMatch).count() == 0
    assert get_position(session, p.id, a.id, price=100).quantity == Decimal("11")
    assert session.query(CashFlow).filter(CashFlow.reference_id == flagged.id).count() == 0
    assert cash_balance_as_of(session, p.id, dt.date(2024, 1, 31)) == Decimal("-1090.00")


def test_rematch_is_idempotent(session):
    p, a = _setup(session)
    _trade(session, p, a, "BUY", 10, 100, 2)
    _trade(session, p, a, "BUY", 5, 120, 3)
    _trade(session, p, a, "SELL", 12, 130, 4)
    before = [(m.buy_trade_id, m.sell_trade_id, Decimal(m.quantity), Decimal(m.realized_pl)) for m in list_matches(session, portfolio_id=p.id)]

    first = rematch_asset(session, portfolio_id=p.id, asset_id=a.id)
    second = rematch_asset(session, portfolio_id=p.id, asset_id=a.id)

    after = [(m.buy_trade_id, m.sell_trade_id, Decimal(m.quantity), Decimal(m.realized_pl)) for m in list_matches(session, portfolio_id=p.id)]
    assert before == after
    assert first.as_json() == second.as_json()
    assert first.realized_pl == Decimal("320.00")


def test_unknown_side_and_missing_portfolio(session):
    p, a = _setup(session)
    with pytest.raises(ValidationError):
        _trade(session, p, a, "HOLD", 1, 100, 2)
    with pytest.raises(NotFoundError):
        record_trade(session, portfolio_id=999, asset_id=a.id, side="BUY", quantity=1, price=1, trade_date=dt.date(2024, 1, 2))
