from __future__ import annotations

import datetime as dt
from decimal import Decimal

from folioledger.core.matching import TradeRow
from folioledger.core.portfolio_store import create_asset, create_portfolio, record_price
from folioledger.core.positions import fold_position, get_position, list_positions, verify_asset_ledger
from folioledger.core.pricing import MappingPriceSource, price_on_or_before
from folioledger.core.trades import record_trade
from folioledger.db.models import TradeMatchState


def _row(id_, side, qty, price, day) -> TradeRow:
    return TradeRow(
        id=id_,
        side=side,
        quantity=Decimal(str(qty)),
        price=Decimal(str(price)),
        fee=Decimal("0"),
        tax=Decimal("0"),
        trade_date=dt.date(2024, 2, day),
    )


def test_fold_position_weighted_average_of_open_lots():
    pos = fold_position(
        [_row(1, "BUY", 10, 100, 1), _row(2, "BUY", 5, 120, 2), _row(3, "SELL", 12, 130, 3)],
        price=Decimal("125"),
    )
    assert pos.quantity == Decimal("3")
    assert pos.avg_cost == Decimal("120")
    assert pos.cost_basis == Decimal("360.00")
    assert pos.realized_pl == Decimal("320.00")
    assert pos.market_value == Decimal("375.00")
    assert pos.unrealized_pl == Decimal("15.00")
    assert pos.open_lots == [(2, Decimal("3"), Decimal("120"))]


def test_average_cost_resets_when_flat():
    flat = fold_position([_row(1, "BUY", 10, 100, 1), _row(2, "SELL", 10, 110, 2)], price=Decimal("110"))
    assert flat.quantity == 0
    assert flat.avg_cost == 0
    assert flat.cost_basis == 0
    assert flat.unrealized_pl == 0
    assert flat.realized_pl == Decimal("100.00")
    assert not flat.is_open

    reopened = fold_position(
        [_row(1, "BUY", 10, 100, 1), _row(2, "SELL", 10, 110, 2), _row(3, "BUY", 4, 90, 3)],
    )
    assert reopened.avg_cost == Decimal("90")
    assert reopened.current_price is None
    assert reopened.unrealized_pl == 0


def test_fold_is_a_pure_function_of_history():
    rows = [_row(1, "BUY", 7, 10, 1), _row(2, "SELL", 3, 11, 2), _row(3, "BUY", 2, 12, 3)]
    assert fold_position(rows, price=Decimal("11")).as_json() == fold_position(list(reversed(rows)), price=Decimal("11")).as_json()


def test_price_on_or_before_carries_forward():
    series = [(dt.date(2024, 2, 1), Decimal("10")), (dt.date(2024, 2, 3), Decimal("12"))]
    assert price_on_or_before(series, dt.date(2024, 1, 31)) is None
    assert price_on_or_before(series, dt.date(2024, 2, 2)) == (dt.date(2024, 2, 1), Decimal("10"))
    assert price_on_or_before(series, dt.date(2024, 2, 9)) == (dt.date(2024, 2, 3), Decimal("12"))
    assert price_on_or_before([], dt.date(2024, 2, 9)) is None

    month = [(dt.date(2024, 3, n), Decimal(n)) for n in range(1, 31, 2)]
    assert price_on_or_before(month, dt.date(2024, 3, 15)) == (dt.date(2024, 3, 15), Decimal("15"))
    assert price_on_or_before(month, dt.date(2024, 3, 16)) == (dt.date(2024, 3, 15), Decimal("15"))
    assert price_on_or_before(month, dt.date(2024, 4, 1)) == (dt.date(2024, 3, 29), Decimal("29"))

    src = MappingPriceSource({(1, dt.date(2024, 2, 1)): Decimal("10")})
    assert src.price(1, dt.date(2024, 2, 1)).source == "MARKET"
    assert src.price(1, dt.date(2024, 2, 4)).source == "CARRIED_FORWARD"
    assert src.price(2, dt.date(2024, 2, 4)) is None


def _ledger(session):
    p = create_portfolio(session, name="Growth")
    a = create_asset(session, symbol="XYZ", asset_type="ETF")
    for side, qty, px, day in [("BUY", 10, 100, 1), ("BUY", 5, 120, 5), ("SELL", 12, 130, 10)]:
        record_trade(
            session,
            portfolio_id=p.id,
            asset_id=a.id,
            side=side,
            quantity=qty,
            price=px,
            trade_date=dt.date(2024, 2, day),
        )
    return p, a


def test_point_in_time_position(session):
    p, a = _ledger(session)
    before_sell = get_position(session, p.id, a.id, as_of=dt.date(2024, 2, 6), price=110)
    assert before_sell.quantity == Decimal("15")
    assert before_sell.avg_cost == Decimal("106.66666667")
    assert before_sell.realized_pl == 0

    before_any = get_position(session, p.id, a.id, as_of=dt.date(2024, 1, 31))
    assert before_any.quantity == 0
    assert before_any.current_price is None


def test_current_position_matches_full_replay(session):
    p, a = _ledger(session)
    current = get_position(session, p.id, a.id, price=130)
    replayed = get_position(session, p.id, a.id, as_of=dt.date(2030, 1, 1), price=130)
    assert current.quantity == replayed.quantity == Decimal("3")
    assert current.avg_cost == replayed.avg_cost
    assert current.realized_pl == replayed.realized_pl
    assert current.unrealized_pl == replayed.unrealized_pl
    assert verify_asset_ledger(session, p.id, a.id).ok


def test_verify_detects_tampered_match_state(session):
    p, a = _ledger(session)
    st = session.query(TradeMatchState).order_by(TradeMatchState.trade_id.asc()).first()
    st.matched_quantity = Decimal("1")
    session.commit()

    check = verify_asset_ledger(session, p.id, a.id)
    assert not check.ok
    assert any("replayed" in issue for issue in check.issues)


def test_price_sources_for_valuation(session):
    p, a = _ledger(session)
    # Never priced: falls back to the last trade price.
    pos = get_position(session, p.id, a.id, as_of=dt.date(2024, 2, 12))
    assert pos.price_source == "TRADE"
    assert pos.current_price == Decimal("130")

    record_price(session, asset_id=a.id, price_date=dt.date(2024, 2, 11), price="140")
    pos = get_position(session, p.id, a.id, as_of=dt.date(2024, 2, 12))
    assert pos.price_source == "CARRIED_FORWARD"
    assert pos.price_date == dt.date(2024, 2, 11)
    assert pos.unrealized_pl == Decimal("60.00")

    pos = get_position(session, p.id, a.id, as_of=dt.date(2024, 2, 11))
    assert pos.price_source == "MARKET"


def test_list_positions_skips_closed_unless_asked(session):
    p, a = _ledger(session)
    other = create_asset(session, symbol="FLAT")
    record_trade(session, portfolio_id=p.id, asset_id=other.id, side="BUY", quantity=1, price=10, trade_date=dt.date(2024, 2, 2))
    record_trade(session, portfolio_id=p.id, asset_id=other.id, side="SELL", quantity=1, price=12, trade_date=dt.date(2024, 2, 3))

    open_only = list_positions(session, p.id, as_of=dt.date(2024, 2, 20))
    assert [pos.asset_id for pos in open_only] == [a.id]

    everything = list_positions(session, p.id, as_of=dt.date(2024, 2, 20), include_closed=True)
    assert sorted(pos.asset_id for pos in everything) == sorted([a.id, other.id])
    closed = [pos for pos in everything if pos.asset_id == other.id][0]
    assert closed.realized_pl == Decimal("2.00")
