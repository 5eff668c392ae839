from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from folioledger.core.errors import IntegrityFault, ValidationError
from folioledger.utils.money import ZERO, money


@dataclass(frozen=True)
class TradeRow:
    id: int
    side: str
    quantity: Decimal
    price: Decimal
    fee: Decimal
    tax: Decimal
    trade_date: dt.date

    @classmethod
    def from_model(cls, t: Any) -> "TradeRow":
        return cls(
            id=int(t.id),
            side=str(t.side),
            quantity=Decimal(t.quantity),
            price=Decimal(t.price),
            fee=Decimal(t.fee or 0),
            tax=Decimal(t.tax or 0),
            trade_date=t.trade_date,
        )


@dataclass
class OpenLot:
    trade: TradeRow
    remaining: Decimal

    @property
    def trade_id(self) -> int:
        return self.trade.id


@dataclass(frozen=True)
class LotMatch:
    buy_trade_id: int
    sell_trade_id: int
    quantity: Decimal
    buy_price: Decimal
    sell_price: Decimal
    allocated_fee: Decimal
    allocated_tax: Decimal
    realized_pl: Decimal
    matched_date: dt.date


@dataclass
class MatchOutcome:
    matches: list[LotMatch] = field(default_factory=list)
    matched_by_trade: dict[int, Decimal] = field(default_factory=dict)
    open_lots: list[OpenLot] = field(default_factory=list)
    trades: list[TradeRow] = field(default_factory=list)

    @property
    def realized_pl(self) -> Decimal:
        return sum((m.realized_pl for m in self.matches), ZERO)

    @property
    def open_quantity(self) -> Decimal:
        return sum((lot.remaining for lot in self.open_lots), ZERO)


def _allocated(total: Decimal, quantity: Decimal, before: Decimal, take: Decimal) -> Decimal:
    # Cumulative rounding: allocations of a fully consumed trade sum exactly to `total`.
    if total == 0 or quantity == 0:
        return ZERO
    return money(total * (before + take) / quantity) - money(total * before / quantity)


class LotMatcher:
    """
    Replays one (portfolio, asset) trade sequence, pairing SELLs with open BUY lots.

    FIFO consumes the oldest open lot first, LIFO the newest. Short selling is
    rejected: a SELL that exceeds the open quantity raises `ValidationError`.
    """

    def __init__(self, policy: str = "FIFO", *, open_lots: Iterable[OpenLot] = (), matched: dict[int, Decimal] | None = None):
        p = (policy or "FIFO").upper()
        if p not in ("FIFO", "LIFO"):
            raise ValidationError(f"Unknown matching policy: {policy}")
        self.policy = p
        self.open_lots: list[OpenLot] = sorted(open_lots, key=lambda l: (l.trade.trade_date, l.trade.id))
        self.matched: dict[int, Decimal] = dict(matched or {})

    def open_quantity(self) -> Decimal:
        return sum((lot.remaining for lot in self.open_lots), ZERO)

    def apply(self, trade: TradeRow) -> list[LotMatch]:
        if trade.quantity <= 0:
            raise ValidationError(f"Trade {trade.id}: quantity must be positive")
        self.matched.setdefault(trade.id, ZERO)
        if trade.side == "BUY":
            self.open_lots.append(OpenLot(trade=trade, remaining=trade.quantity))
            return []
        if trade.side != "SELL":
            raise ValidationError(f"Trade {trade.id}: unknown side {trade.side}")

        available = self.open_quantity()
        if trade.quantity > available:
            raise ValidationError(
                f"SELL trade {trade.id} on {trade.trade_date.isoformat()} for {trade.quantity} exceeds "
                f"open quantity {available}; short positions are not permitted"
            )

        out: list[LotMatch] = []
        remaining = trade.quantity
        while remaining > 0:
            idx = 0 if self.policy == "FIFO" else len(self.open_lots) - 1
            lot = self.open_lots[idx]
            take = min(remaining, lot.remaining)
            buy = lot.trade

            buy_before = self.matched.get(buy.id, ZERO)
            sell_before = self.matched.get(trade.id, ZERO)
            buy_fee = _allocated(buy.fee, buy.quantity, buy_before, take)
            buy_tax = _allocated(buy.tax, buy.quantity, buy_before, take)
            sell_fee = _allocated(trade.fee, trade.quantity, sell_before, take)
            sell_tax = _allocated(trade.tax, trade.quantity, sell_before, take)
            fee = buy_fee + sell_fee
            tax = buy_tax + sell_tax
            pnl = money((trade.price - buy.price) * take - fee - tax)

            out.append(
                LotMatch(
                    buy_trade_id=buy.id,
                    sell_trade_id=trade.id,
                    quantity=take,
                    buy_price=buy.price,
                    sell_price=trade.price,
                    allocated_fee=fee,
                    allocated_tax=tax,
                    realized_pl=pnl,
                    matched_date=trade.trade_date,
                )
            )
            self.matched[buy.id] = buy_before + take
            self.matched[trade.id] = sell_before + take
            lot.remaining -= take
            remaining -= take
            if lot.remaining == 0:
                self.open_lots.pop(idx)
        return out


def check_matched_quantities(trades: Iterable[TradeRow], matched: dict[int, Decimal]) -> None:
    for t in trades:
        m = matched.get(t.id, ZERO)
        if m < 0 or m > t.quantity:
            raise IntegrityFault(f"Trade {t.id}: matched quantity {m} outside [0, {t.quantity}]")


def match_trades(trades: Iterable[TradeRow], policy: str = "FIFO") -> MatchOutcome:
    """
    Deterministic replay of a full trade history for one (portfolio, asset).

    Trades are ordered by (trade_date, id): FIFO depends on trade chronology, not
    insertion order.
    """
    ordered = sorted(trades, key=lambda t: (t.trade_date, t.id))
    matcher = LotMatcher(policy)
    matches: list[LotMatch] = []
    for t in ordered:
        matches.extend(matcher.apply(t))
    check_matched_quantities(ordered, matcher.matched)
    return MatchOutcome(
        matches=matches,
        matched_by_trade=dict(matcher.matched),
        open_lots=list(matcher.open_lots),
        trades=ordered,
    )


def match_status(trade: TradeRow, matched: Decimal) -> str:
    if matched <= 0:
        return "OPEN"
    if matched < trade.quantity:
        return "PARTIAL"
    return "CLOSED"
