from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from folioledger.core.errors import LedgerError
from folioledger.core.matching import OpenLot, TradeRow, match_trades
from folioledger.core.portfolio_store import get_asset, get_portfolio
from folioledger.core.pricing import DbPriceSource, PriceQuote, PriceSource
from folioledger.db.models import Trade, TradeMatch, TradeMatchState
from folioledger.utils.money import PRICE, QTY, ZERO, as_json_number, money, q

log = logging.getLogger(__name__)


@dataclass
class Position:
    portfolio_id: int
    asset_id: int
    quantity: Decimal
    avg_cost: Decimal
    cost_basis: Decimal
    realized_pl: Decimal
    unrealized_pl: Decimal
    current_price: Optional[Decimal] = None
    price_date: Optional[dt.date] = None
    price_source: Optional[str] = None
    market_value: Decimal = ZERO
    open_lots: list[tuple[int, Decimal, Decimal]] = field(default_factory=list)  # (trade_id, remaining, price)
    last_trade_price: Optional[Decimal] = None

    @property
    def is_open(self) -> bool:
        return self.quantity != 0

    def as_json(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "asset_id": self.asset_id,
            "quantity": as_json_number(self.quantity),
            "avg_cost": as_json_number(self.avg_cost),
            "cost_basis": as_json_number(self.cost_basis),
            "realized_pl": as_json_number(self.realized_pl),
            "unrealized_pl": as_json_number(self.unrealized_pl),
            "current_price": as_json_number(self.current_price),
            "price_date": self.price_date.isoformat() if self.price_date else None,
            "price_source": self.price_source,
            "market_value": as_json_number(self.market_value),
            "open_lots": [
                {"trade_id": tid, "remaining": as_json_number(rem), "price": as_json_number(px)}
                for tid, rem, px in self.open_lots
            ],
        }


def _last_trade_price(trades: Iterable[TradeRow]) -> Optional[Decimal]:
    last: TradeRow | None = None
    for t in trades:
        if last is None or (t.trade_date, t.id) >= (last.trade_date, last.id):
            last = t
    return last.price if last is not None else None


def _build_position(
    portfolio_id: int,
    asset_id: int,
    open_lots: list[OpenLot],
    realized_pl: Decimal,
    *,
    quote: Optional[PriceQuote],
    last_trade_price: Optional[Decimal],
) -> Position:
    qty = sum((lot.remaining for lot in open_lots), ZERO)
    cost = sum((lot.remaining * lot.trade.price for lot in open_lots), ZERO)
    # Average cost resets to zero once the position is flat.
    avg = q(cost / qty, PRICE) if qty != 0 else ZERO
    pos = Position(
        portfolio_id=portfolio_id,
        asset_id=asset_id,
        quantity=q(qty, QTY),
        avg_cost=avg,
        cost_basis=money(cost),
        realized_pl=money(realized_pl),
        unrealized_pl=ZERO,
        open_lots=[(lot.trade.id, lot.remaining, lot.trade.price) for lot in open_lots],
        last_trade_price=last_trade_price,
    )
    if quote is not None:
        pos.current_price = quote.price
        pos.price_date = quote.price_date
        pos.price_source = quote.source
        pos.market_value = money(qty * quote.price)
        pos.unrealized_pl = money(qty * quote.price) - money(cost)
    return pos


def fold_position(
    trades: Iterable[TradeRow],
    policy: str = "FIFO",
    *,
    price: Any = None,
    portfolio_id: int = 0,
    asset_id: int = 0,
) -> Position:
    """
    Pure fold of a trade history into a position.

    Quantity is the open remainder after matching; average cost is the weighted
    mean of the open buy lots (fees excluded); unrealized P&L is marked at `price`
    when one is given.
    """
    rows = list(trades)
    outcome = match_trades(rows, policy)
    quote = None
    if price is not None:
        quote = price if isinstance(price, PriceQuote) else PriceQuote(price=Decimal(price), price_date=dt.date.min, source="MARKET")
    return _build_position(
        portfolio_id,
        asset_id,
        outcome.open_lots,
        outcome.realized_pl,
        quote=quote,
        last_trade_price=_last_trade_price(rows),
    )


def load_trade_rows(
    session: Session,
    portfolio_id: int,
    asset_id: int,
    *,
    as_of: Optional[dt.date] = None,
    include_unmatched: bool = False,
) -> list[TradeRow]:
    qry = session.query(Trade).filter(Trade.portfolio_id == portfolio_id, Trade.asset_id == asset_id)
    if not include_unmatched:
        qry = qry.outerjoin(TradeMatchState, TradeMatchState.trade_id == Trade.id).filter(
            (TradeMatchState.status.is_(None)) | (TradeMatchState.status != "UNMATCHED")
        )
    if as_of is not None:
        qry = qry.filter(Trade.trade_date <= as_of)
    rows = qry.order_by(Trade.trade_date.asc(), Trade.id.asc()).all()
    return [TradeRow.from_model(t) for t in rows]


def resolve_quote(
    prices: PriceSource,
    asset_id: int,
    on: dt.date,
    *,
    last_trade_price: Optional[Decimal],
    last_trade_date: Optional[dt.date] = None,
) -> Optional[PriceQuote]:
    """Market price on/before `on`; else the last trade price; else None."""
    quote = prices.price(asset_id, on)
    if quote is not None:
        return quote
    if last_trade_price is not None:
        return PriceQuote(price=last_trade_price, price_date=last_trade_date or on, source="TRADE")
    return None


def _persisted_position(session: Session, portfolio_id: int, asset_id: int) -> tuple[list[OpenLot], Decimal, list[TradeRow]]:
    trades = (
        session.query(Trade)
        .filter(Trade.portfolio_id == portfolio_id, Trade.asset_id == asset_id)
        .order_by(Trade.trade_date.asc(), Trade.id.asc())
        .all()
    )
    states = {
        s.trade_id: s
        for s in session.query(TradeMatchState)
        .join(Trade, Trade.id == TradeMatchState.trade_id)
        .filter(Trade.portfolio_id == portfolio_id, Trade.asset_id == asset_id)
        .all()
    }
    lots: list[OpenLot] = []
    rows: list[TradeRow] = []
    for t in trades:
        st = states.get(t.id)
        if st is not None and st.status == "UNMATCHED":
            continue
        row = TradeRow.from_model(t)
        rows.append(row)
        if row.side != "BUY":
            continue
        matched = Decimal(st.matched_quantity) if st is not None else ZERO
        remaining = row.quantity - matched
        if remaining > 0:
            lots.append(OpenLot(trade=row, remaining=remaining))
    realized = (
        session.query(func.coalesce(func.sum(TradeMatch.realized_pl), 0))
        .filter(TradeMatch.portfolio_id == portfolio_id, TradeMatch.asset_id == asset_id)
        .scalar()
    )
    return lots, Decimal(realized or 0), rows


def get_position(
    session: Session,
    portfolio_id: int,
    asset_id: int,
    *,
    as_of: Optional[dt.date] = None,
    price: Any = None,
    prices: Optional[PriceSource] = None,
) -> Position:
    """
    Current position from the persisted match state, or a point-in-time replay when
    `as_of` is given. Either path is O(trades for the asset).
    """
    p = get_portfolio(session, portfolio_id)
    get_asset(session, asset_id)
    on = as_of or dt.date.today()

    if as_of is None:
        lots, realized, rows = _persisted_position(session, portfolio_id, asset_id)
    else:
        rows = load_trade_rows(session, portfolio_id, asset_id, as_of=as_of)
        outcome = match_trades(rows, p.matching_policy)
        lots, realized = outcome.open_lots, outcome.realized_pl

    last_px = _last_trade_price(rows)
    if price is not None:
        quote = PriceQuote(price=Decimal(price), price_date=on, source="MARKET")
    else:
        last_date = max((r.trade_date for r in rows), default=None)
        quote = resolve_quote(prices or DbPriceSource(session), asset_id, on, last_trade_price=last_px, last_trade_date=last_date)
    return _build_position(portfolio_id, asset_id, lots, realized, quote=quote, last_trade_price=last_px)


def list_positions(
    session: Session,
    portfolio_id: int,
    *,
    as_of: Optional[dt.date] = None,
    include_closed: bool = False,
    prices: Optional[PriceSource] = None,
) -> list[Position]:
    get_portfolio(session, portfolio_id)
    qry = session.query(Trade.asset_id).filter(Trade.portfolio_id == portfolio_id)
    if as_of is not None:
        qry = qry.filter(Trade.trade_date <= as_of)
    asset_ids = sorted({int(r[0]) for r in qry.distinct().all()})
    src = prices or DbPriceSource(session)
    out: list[Position] = []
    for aid in asset_ids:
        pos = get_position(session, portfolio_id, aid, as_of=as_of, prices=src)
        if pos.is_open or include_closed:
            out.append(pos)
    return out


@dataclass(frozen=True)
class LedgerCheck:
    portfolio_id: int
    asset_id: int
    issues: list[str]

    @property
    def ok(self) -> bool:
        return not self.issues


def verify_asset_ledger(session: Session, portfolio_id: int, asset_id: int) -> LedgerCheck:
    """
    Compare persisted matches and match states against a fresh replay of the trades.
    """
    p = get_portfolio(session, portfolio_id)
    rows = load_trade_rows(session, portfolio_id, asset_id)
    issues: list[str] = []
    try:
        outcome = match_trades(rows, p.matching_policy)
    except LedgerError as e:
        issues.append(f"replay failed: {e}")
        log.error("Ledger replay failed portfolio=%s asset=%s: %s", portfolio_id, asset_id, e)
        return LedgerCheck(portfolio_id=portfolio_id, asset_id=asset_id, issues=issues)

    persisted = (
        session.query(TradeMatch)
        .filter(TradeMatch.portfolio_id == portfolio_id, TradeMatch.asset_id == asset_id)
        .order_by(TradeMatch.id.asc())
        .all()
    )
    want = sorted((m.buy_trade_id, m.sell_trade_id, m.quantity, m.realized_pl) for m in outcome.matches)
    have = sorted((m.buy_trade_id, m.sell_trade_id, Decimal(m.quantity), Decimal(m.realized_pl)) for m in persisted)
    if want != have:
        issues.append(f"matches differ: persisted={len(have)} replayed={len(want)}")

    states = {
        s.trade_id: Decimal(s.matched_quantity)
        for s in session.query(TradeMatchState).filter(TradeMatchState.trade_id.in_([r.id for r in rows])).all()
    }
    for r in rows:
        expected = outcome.matched_by_trade.get(r.id, ZERO)
        got = states.get(r.id, ZERO)
        if expected != got:
            issues.append(f"trade {r.id}: matched {got} != replayed {expected}")
        if got > r.quantity:
            issues.append(f"trade {r.id}: matched {got} exceeds quantity {r.quantity}")

    if issues:
        log.error("Ledger mismatch portfolio=%s asset=%s: %s", portfolio_id, asset_id, "; ".join(issues))
    return LedgerCheck(portfolio_id=portfolio_id, asset_id=asset_id, issues=issues)
