from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from folioledger.db.models import AssetPrice


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    price_date: dt.date
    source: str  # MARKET | CARRIED_FORWARD | TRADE

    def is_gap(self) -> bool:
        return self.source != "MARKET"


class PriceSource(Protocol):
    def price(self, asset_id: int, on: dt.date) -> Optional[PriceQuote]:
        """Price on `on`, or the last known price before it; None if never priced."""


def price_on_or_before(series: list[tuple[dt.date, Decimal]], d: dt.date) -> tuple[dt.date, Decimal] | None:
    """
    Latest (date, price) point on/before `d` in an ascending series.
    """
    lo = 0
    hi = len(series) - 1
    best: tuple[dt.date, Decimal] | None = None
    while lo <= hi:
        mid = (lo + hi) // 2
        pd, px = series[mid]
        if pd <= d:
            best = (pd, px)
            lo = mid + 1
        else:
            hi = mid - 1
    return best


class DbPriceSource:
    """
    Pricing source backed by the `asset_prices` table with last-known-price carry-forward.
    """

    def __init__(self, session: Session):
        self.session = session
        self._cache: dict[int, list[tuple[dt.date, Decimal]]] = {}

    def _series(self, asset_id: int) -> list[tuple[dt.date, Decimal]]:
        s = self._cache.get(asset_id)
        if s is None:
            rows = (
                self.session.query(AssetPrice.price_date, AssetPrice.price)
                .filter(AssetPrice.asset_id == asset_id)
                .order_by(AssetPrice.price_date.asc())
                .all()
            )
            s = [(d, Decimal(p)) for d, p in rows]
            self._cache[asset_id] = s
        return s

    def price(self, asset_id: int, on: dt.date) -> Optional[PriceQuote]:
        pt = price_on_or_before(self._series(asset_id), on)
        if pt is None:
            return None
        pd, px = pt
        return PriceQuote(price=px, price_date=pd, source="MARKET" if pd == on else "CARRIED_FORWARD")


class MappingPriceSource:
    """In-memory source keyed by (asset_id, date); same carry-forward rule as the DB source."""

    def __init__(self, prices: dict[tuple[int, dt.date], Decimal]):
        self._series: dict[int, list[tuple[dt.date, Decimal]]] = {}
        for (asset_id, d), px in sorted(prices.items(), key=lambda kv: (kv[0][0], kv[0][1])):
            self._series.setdefault(asset_id, []).append((d, Decimal(px)))

    def price(self, asset_id: int, on: dt.date) -> Optional[PriceQuote]:
        pt = price_on_or_before(self._series.get(asset_id, []), on)
        if pt is None:
            return None
        pd, px = pt
        return PriceQuote(price=px, price_date=pd, source="MARKET" if pd == on else "CARRIED_FORWARD")
