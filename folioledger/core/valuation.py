from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from folioledger.core.config import get_config
from folioledger.core.matching import TradeRow
from folioledger.core.portfolio_store import cash_balance_as_of, get_portfolio
from folioledger.core.positions import Position, fold_position, resolve_quote
from folioledger.core.pricing import DbPriceSource, PriceSource
from folioledger.db.models import Asset, Trade, TradeMatchState
from folioledger.utils.money import ZERO, money

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetValuation:
    asset_id: int
    symbol: str
    asset_type: str
    position: Position
    buy_notional: Decimal

    @property
    def current_value(self) -> Decimal:
        return self.position.market_value


@dataclass
class PortfolioValuation:
    portfolio_id: int
    as_of: dt.date
    assets: list[AssetValuation] = field(default_factory=list)
    cash_balance: Decimal = ZERO
    gaps: list[dict[str, Any]] = field(default_factory=list)

    @property
    def invested_value(self) -> Decimal:
        return sum((a.current_value for a in self.assets), ZERO)

    @property
    def total_value(self) -> Decimal:
        return self.invested_value + self.cash_balance

    @property
    def cost_basis(self) -> Decimal:
        return sum((a.position.cost_basis for a in self.assets), ZERO)

    @property
    def realized_pl(self) -> Decimal:
        return sum((a.position.realized_pl for a in self.assets), ZERO)

    @property
    def unrealized_pl(self) -> Decimal:
        return sum((a.position.unrealized_pl for a in self.assets), ZERO)


def _trades_by_asset(session: Session, portfolio_id: int, as_of: dt.date) -> dict[int, list[TradeRow]]:
    rows = (
        session.query(Trade)
        .outerjoin(TradeMatchState, TradeMatchState.trade_id == Trade.id)
        .filter(
            Trade.portfolio_id == portfolio_id,
            Trade.trade_date <= as_of,
            (TradeMatchState.status.is_(None)) | (TradeMatchState.status != "UNMATCHED"),
        )
        .order_by(Trade.trade_date.asc(), Trade.id.asc())
        .all()
    )
    out: dict[int, list[TradeRow]] = defaultdict(list)
    for t in rows:
        out[int(t.asset_id)].append(TradeRow.from_model(t))
    return out


def value_portfolio(
    session: Session,
    portfolio_id: int,
    as_of: dt.date,
    prices: Optional[PriceSource] = None,
) -> PortfolioValuation:
    """
    Point-in-time valuation: every asset traded on or before `as_of` is folded from
    its trades up to that date and marked at the price as of that date.

    Missing prices are carried forward from the last known price (or the last trade
    price when the asset was never priced); each such asset is listed in `gaps`.
    """
    p = get_portfolio(session, portfolio_id)
    src = prices or DbPriceSource(session)
    max_stale = get_config().max_price_staleness_days
    by_asset = _trades_by_asset(session, portfolio_id, as_of)
    assets = {a.id: a for a in session.query(Asset).filter(Asset.id.in_(list(by_asset))).all()} if by_asset else {}

    val = PortfolioValuation(portfolio_id=portfolio_id, as_of=as_of)
    for asset_id in sorted(by_asset):
        rows = by_asset[asset_id]
        a = assets[asset_id]
        last = rows[-1]
        quote = resolve_quote(src, asset_id, as_of, last_trade_price=last.price, last_trade_date=last.trade_date)
        pos = fold_position(rows, p.matching_policy, price=quote, portfolio_id=portfolio_id, asset_id=asset_id)
        buy_notional = money(sum((r.quantity * r.price for r in rows if r.side == "BUY"), ZERO))
        val.assets.append(
            AssetValuation(asset_id=asset_id, symbol=a.symbol, asset_type=a.asset_type, position=pos, buy_notional=buy_notional)
        )
        if quote is not None and quote.is_gap() and pos.is_open:
            age = (as_of - quote.price_date).days
            gap = {
                "asset_id": asset_id,
                "symbol": a.symbol,
                "date": as_of.isoformat(),
                "price_source": quote.source,
                "price_date": quote.price_date.isoformat(),
                "age_days": age,
                "stale": max_stale is not None and age > max_stale,
            }
            val.gaps.append(gap)
            log.warning(
                "No price for %s on %s; using %s price from %s",
                a.symbol,
                as_of,
                quote.source,
                quote.price_date,
            )

    val.cash_balance = cash_balance_as_of(session, portfolio_id, as_of)
    return val
