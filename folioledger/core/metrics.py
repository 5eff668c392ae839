from __future__ import annotations

import datetime as dt
import math
from decimal import Decimal
from typing import Optional, Sequence

from folioledger.utils.money import RATIO, ZERO, q, ratio
from folioledger.utils.time import month_start, week_start, year_start

PERIODS_PER_YEAR = {"DAILY": 252, "WEEKLY": 52, "MONTHLY": 12}


def period_return(begin: Optional[Decimal], end: Decimal) -> Optional[Decimal]:
    """Simple return end/begin - 1 as a fraction; None when there is no usable base."""
    if begin is None or begin <= 0:
        return None
    return ratio(end - begin, begin)


def window_start(granularity_window: str, d: dt.date) -> dt.date:
    w = granularity_window.upper()
    if w == "WEEK":
        return week_start(d)
    if w == "MONTH":
        return month_start(d)
    if w == "YEAR":
        return year_start(d)
    raise ValueError(f"Unknown return window: {granularity_window}")


def base_point_for_window(
    history: Sequence[tuple[dt.date, Decimal]],
    d: dt.date,
    window: str,
) -> Optional[tuple[dt.date, Decimal]]:
    """
    Base (date, value) for a direct start/end comparison over the window containing `d`.

    Uses the latest point dated before the window start; when the history starts
    inside the window, the earliest point inside it (but before `d`).
    `history` holds prior points only, ascending.
    """
    start = window_start(window, d)
    before = [(hd, v) for hd, v in history if hd < start]
    if before:
        return before[-1]
    inside = [(hd, v) for hd, v in history if start <= hd < d]
    return inside[0] if inside else None


def base_value_for_window(
    history: Sequence[tuple[dt.date, Decimal]],
    d: dt.date,
    window: str,
) -> Optional[Decimal]:
    pt = base_point_for_window(history, d, window)
    return pt[1] if pt is not None else None


def _sqrt(x: Decimal) -> Decimal:
    return x.sqrt() if x > 0 else ZERO


def volatility(returns: Sequence[Decimal], *, window: int = 30) -> Optional[Decimal]:
    """Sample standard deviation of the trailing `window` period returns."""
    tail = [r for r in returns if r is not None][-window:]
    if len(tail) < 2:
        return None
    n = Decimal(len(tail))
    mean = sum(tail, ZERO) / n
    var = sum(((r - mean) ** 2 for r in tail), ZERO) / (n - 1)
    return q(_sqrt(var), RATIO)


def max_drawdown(values: Sequence[Decimal]) -> Decimal:
    """Largest peak-to-trough decline as a positive fraction of the peak."""
    peak: Optional[Decimal] = None
    worst = ZERO
    for v in values:
        if peak is None or v > peak:
            peak = v
            continue
        if peak > 0:
            dd = (peak - v) / peak
            if dd > worst:
                worst = dd
    return q(worst, RATIO)


def sharpe_ratio(
    returns: Sequence[Decimal],
    *,
    periods_per_year: int = 252,
    risk_free_annual: Decimal = ZERO,
) -> Optional[Decimal]:
    tail = [r for r in returns if r is not None]
    if len(tail) < 2:
        return None
    rf_p = Decimal(risk_free_annual) / Decimal(periods_per_year)
    excess = [r - rf_p for r in tail]
    n = Decimal(len(excess))
    mean_excess = sum(excess, ZERO) / n
    var = sum(((r - mean_excess) ** 2 for r in excess), ZERO) / (n - 1)
    if var <= 0:
        return None
    return q(mean_excess / var.sqrt() * Decimal(periods_per_year).sqrt(), RATIO)


def flow_adjusted_return(begin: Optional[Decimal], end: Decimal, net_flow: Decimal) -> Optional[Decimal]:
    """
    Single-period time-weighted return: (end - net_flow) / begin - 1.

    External flows are treated as arriving at the end of the period, so money moved
    in or out is not counted as gain or loss.
    """
    if begin is None or begin <= 0:
        return None
    return ratio(end - net_flow - begin, begin)


def chain_returns(returns: Sequence[Optional[Decimal]]) -> Optional[Decimal]:
    """Geometric link of period returns; periods without a return are skipped."""
    links = [r for r in returns if r is not None]
    if not links:
        return None
    acc = Decimal(1)
    for r in links:
        acc *= Decimal(1) + r
    return q(acc - 1, RATIO)


def chained_return_for_window(
    history: Sequence[tuple[dt.date, Optional[Decimal]]],
    d: dt.date,
    window: str,
    current: Optional[Decimal],
) -> Optional[Decimal]:
    """
    Chain the per-period returns that fall after the window's base point.

    The base point is chosen as in `base_value_for_window`; the base snapshot's own
    return covers the time before it and is not linked.
    """
    start = window_start(window, d)
    before = [i for i, (hd, _r) in enumerate(history) if hd < start]
    if before:
        base = before[-1]
    else:
        inside = [i for i, (hd, _r) in enumerate(history) if start <= hd < d]
        if not inside:
            return None
        base = inside[0]
    return chain_returns([r for _hd, r in history[base + 1:]] + [current])


def _npv(rate: float, cashflows: list[tuple[dt.date, float]], period_days: float) -> float:
    if rate <= -0.999999:
        return float("inf")
    d0 = cashflows[0][0]
    out = 0.0
    for d, amt in cashflows:
        out += amt / ((1.0 + rate) ** ((d - d0).days / period_days))
    return out


def xirr(cashflows: list[tuple[dt.date, float]], *, period_days: float = 365.0) -> Optional[float]:
    """
    Rate per `period_days` at which the dated cash flows have zero present value.

    Newton-Raphson from a few starting guesses, then bisection over wide bounds.
    """
    cfs = sorted(((d, float(a)) for d, a in cashflows), key=lambda x: x[0])
    if len(cfs) < 2:
        return None
    if not (any(a > 0 for _d, a in cfs) and any(a < 0 for _d, a in cfs)):
        return None

    for guess in (0.1, 0.05, 0.2, 0.0, -0.2):
        r = guess
        for _ in range(50):
            f = _npv(r, cfs, period_days)
            if abs(f) < 1e-6:
                return r
            eps = 1e-6
            df = (_npv(r + eps, cfs, period_days) - f) / eps
            if df == 0 or not math.isfinite(df):
                break
            r2 = r - f / df
            if r2 <= -0.999999 or not math.isfinite(r2):
                break
            if abs(r2 - r) < 1e-9:
                return r2
            r = r2

    lo, hi = -0.95, 10.0
    f_lo = _npv(lo, cfs, period_days)
    f_hi = _npv(hi, cfs, period_days)
    if not (math.isfinite(f_lo) and math.isfinite(f_hi)) or f_lo * f_hi > 0:
        return None
    for _ in range(200):
        mid = (lo + hi) / 2.0
        f_mid = _npv(mid, cfs, period_days)
        if abs(f_mid) < 1e-6 or abs(hi - lo) < 1e-9:
            return mid
        if f_lo * f_mid <= 0:
            hi = mid
        else:
            lo, f_lo = mid, f_mid
    return None


def money_weighted_return(
    base: tuple[dt.date, Decimal],
    flows: Sequence[tuple[dt.date, Decimal]],
    end: tuple[dt.date, Decimal],
) -> Optional[Decimal]:
    """
    Internal rate of return over (base date, end date], not annualized.

    `flows` are signed from the portfolio's side (deposits positive); only those
    dated after the base and up to the end count.
    """
    bd, bv = base
    ed, ev = end
    if bv <= 0 or ed <= bd:
        return None
    cfs = [(bd, -float(bv))]
    cfs += [(fd, -float(a)) for fd, a in flows if bd < fd <= ed]
    cfs.append((ed, float(ev)))
    r = xirr(cfs, period_days=float((ed - bd).days))
    if r is None:
        return None
    return q(Decimal(repr(r)), RATIO)
