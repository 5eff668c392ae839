from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from folioledger.core.errors import ConcurrencyConflict, IntegrityFault, ValidationError
from folioledger.core.matching import (
    LotMatch,
    LotMatcher,
    OpenLot,
    TradeRow,
    check_matched_quantities,
    match_status,
    match_trades,
)
from folioledger.core.portfolio_store import add_cash_flow, get_asset, get_portfolio
from folioledger.core.positions import load_trade_rows
from folioledger.db.audit import log_change
from folioledger.db.models import AssetLedger, Trade, TradeMatch, TradeMatchState
from folioledger.utils.locks import keyed_lock
from folioledger.utils.money import PRICE, QTY, ZERO, as_json_number, money, q
from folioledger.utils.time import utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeResult:
    trade_id: int
    status: str
    matches: list[LotMatch]
    realized_pl: Decimal
    remaining_quantity: Decimal
    rematched: bool
    ledger_version: int

    def as_json(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "status": self.status,
            "realized_pl": as_json_number(self.realized_pl),
            "remaining_quantity": as_json_number(self.remaining_quantity),
            "rematched": self.rematched,
            "ledger_version": self.ledger_version,
            "matches": [
                {
                    "buy_trade_id": m.buy_trade_id,
                    "sell_trade_id": m.sell_trade_id,
                    "quantity": as_json_number(m.quantity),
                    "buy_price": as_json_number(m.buy_price),
                    "sell_price": as_json_number(m.sell_price),
                    "realized_pl": as_json_number(m.realized_pl),
                }
                for m in self.matches
            ],
        }


@dataclass(frozen=True)
class RematchResult:
    portfolio_id: int
    asset_id: int
    trades_replayed: int
    matches_created: int
    realized_pl: Decimal
    open_quantity: Decimal

    def as_json(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "asset_id": self.asset_id,
            "trades_replayed": self.trades_replayed,
            "matches_created": self.matches_created,
            "realized_pl": as_json_number(self.realized_pl),
            "open_quantity": as_json_number(self.open_quantity),
        }


def _ensure_ledger(session: Session, portfolio_id: int, asset_id: int) -> AssetLedger:
    ledger = (
        session.query(AssetLedger)
        .filter(AssetLedger.portfolio_id == portfolio_id, AssetLedger.asset_id == asset_id)
        .populate_existing()
        .one_or_none()
    )
    if ledger is not None:
        return ledger
    ledger = AssetLedger(portfolio_id=portfolio_id, asset_id=asset_id, trade_count=0)
    session.add(ledger)
    try:
        session.flush()
    except IntegrityError as e:
        session.rollback()
        raise ConcurrencyConflict(f"Ledger for portfolio {portfolio_id} asset {asset_id} created concurrently") from e
    return ledger


def _lock_key(portfolio_id: int, asset_id: int) -> tuple[str, int, int]:
    return ("ledger", portfolio_id, asset_id)


def _add_matches(session: Session, *, portfolio_id: int, asset_id: int, policy: str, matches: Iterable[LotMatch]) -> int:
    n = 0
    for m in matches:
        session.add(
            TradeMatch(
                portfolio_id=portfolio_id,
                asset_id=asset_id,
                buy_trade_id=m.buy_trade_id,
                sell_trade_id=m.sell_trade_id,
                quantity=m.quantity,
                buy_price=m.buy_price,
                sell_price=m.sell_price,
                allocated_fee=m.allocated_fee,
                allocated_tax=m.allocated_tax,
                realized_pl=m.realized_pl,
                matched_date=m.matched_date,
                policy=policy,
            )
        )
        n += 1
    return n


def _write_states(session: Session, rows: Iterable[TradeRow], matched: dict[int, Decimal]) -> None:
    rows = list(rows)
    existing = {
        s.trade_id: s
        for s in session.query(TradeMatchState).filter(TradeMatchState.trade_id.in_([r.id for r in rows])).all()
    }
    for r in rows:
        m = matched.get(r.id, ZERO)
        st = existing.get(r.id)
        if st is None:
            st = TradeMatchState(trade_id=r.id)
            session.add(st)
        st.matched_quantity = m
        st.status = match_status(r, m)
        st.note = None


def _open_buy_lots(session: Session, portfolio_id: int, asset_id: int) -> tuple[list[OpenLot], dict[int, Decimal]]:
    rows = (
        session.query(Trade, TradeMatchState)
        .join(TradeMatchState, TradeMatchState.trade_id == Trade.id)
        .filter(
            Trade.portfolio_id == portfolio_id,
            Trade.asset_id == asset_id,
            Trade.side == "BUY",
            TradeMatchState.status.in_(["OPEN", "PARTIAL"]),
        )
        .order_by(Trade.trade_date.asc(), Trade.id.asc())
        .all()
    )
    lots: list[OpenLot] = []
    matched: dict[int, Decimal] = {}
    for t, st in rows:
        row = TradeRow.from_model(t)
        done = Decimal(st.matched_quantity)
        matched[row.id] = done
        if row.quantity - done > 0:
            lots.append(OpenLot(trade=row, remaining=row.quantity - done))
    return lots, matched


def _flagged_trade_ids(session: Session, portfolio_id: int, asset_id: int) -> list[int]:
    rows = (
        session.query(TradeMatchState.trade_id)
        .join(Trade, Trade.id == TradeMatchState.trade_id)
        .filter(
            Trade.portfolio_id == portfolio_id,
            Trade.asset_id == asset_id,
            TradeMatchState.status == "UNMATCHED",
        )
        .order_by(TradeMatchState.trade_id.asc())
        .all()
    )
    return [int(r[0]) for r in rows]


def _replay_asset(
    session: Session,
    *,
    portfolio_id: int,
    asset_id: int,
    policy: str,
    readmit: bool = False,
    actor: str = "system",
):
    """
    Rebuild matches and states of one (portfolio, asset) from its trades.

    Trades flagged UNMATCHED stay out unless `readmit` is set. A readmitted trade
    gets the settlement cash flow and audit row its failed recording never wrote.
    """
    flagged = _flagged_trade_ids(session, portfolio_id, asset_id) if readmit else []
    session.query(TradeMatch).filter(
        TradeMatch.portfolio_id == portfolio_id, TradeMatch.asset_id == asset_id
    ).delete(synchronize_session="fetch")
    rows = load_trade_rows(session, portfolio_id, asset_id, include_unmatched=readmit)
    outcome = match_trades(rows, policy)
    _add_matches(session, portfolio_id=portfolio_id, asset_id=asset_id, policy=policy, matches=outcome.matches)
    _write_states(session, rows, outcome.matched_by_trade)
    by_id = {r.id: r for r in rows}
    for trade_id in flagged:
        r = by_id[trade_id]
        cf = add_cash_flow(
            session,
            portfolio_id=portfolio_id,
            flow_date=r.trade_date,
            flow_type="TRADE_BUY" if r.side == "BUY" else "TRADE_SELL",
            amount=_settlement_amount(r.side, r.quantity, r.price, money(r.fee), money(r.tax)),
            reference_type="TRADE",
            reference_id=r.id,
            description=f"{r.side} {r.quantity} @ {r.price}",
        )
        log_change(
            session,
            actor=actor,
            action="READMIT_TRADE",
            entity="Trade",
            entity_id=str(r.id),
            old={"status": "UNMATCHED"},
            new={"matched_quantity": str(outcome.matched_by_trade.get(r.id, ZERO)), "cash_flow_id": cf.id},
        )
        log.info("Readmitted trade %s for portfolio=%s asset=%s", r.id, portfolio_id, asset_id)
    return outcome


def _settlement_amount(side: str, quantity: Decimal, price: Decimal, fee: Decimal, tax: Decimal) -> Decimal:
    gross = money(quantity * price)
    if side == "BUY":
        return -(gross + fee + tax)
    return gross - fee - tax


def _flag_unmatched(session: Session, *, trade_kwargs: dict[str, Any], note: str, actor: str) -> int:
    t = Trade(**trade_kwargs)
    session.add(t)
    session.flush()
    session.add(TradeMatchState(trade_id=t.id, matched_quantity=ZERO, status="UNMATCHED", note=note))
    log_change(
        session,
        actor=actor,
        action="RECORD_TRADE_UNMATCHED",
        entity="Trade",
        entity_id=str(t.id),
        old=None,
        new={"side": t.side, "quantity": str(t.quantity), "price": str(t.price)},
        note=note,
    )
    session.commit()
    return t.id


def record_trade(
    session: Session,
    *,
    portfolio_id: int,
    asset_id: int,
    side: str,
    quantity: Any,
    price: Any,
    trade_date: dt.date,
    fee: Any = 0,
    tax: Any = 0,
    source: Optional[str] = None,
    notes: Optional[str] = None,
    expected_version: Optional[int] = None,
    actor: str = "system",
) -> TradeResult:
    """
    Append an immutable trade and match it against the open lots of the same
    (portfolio, asset).

    In-order trades are matched incrementally. A trade dated before the latest
    trade of the asset triggers a full replay of the asset's history.

    Matching is all-or-nothing: a rejected trade (bad input, short sale) persists
    nothing. An integrity fault persists the trade flagged UNMATCHED with no
    matches and re-raises.
    """
    s = (side or "").strip().upper()
    if s not in ("BUY", "SELL"):
        raise ValidationError(f"Unknown trade side: {side}")
    qty = q(quantity, QTY)
    px = q(price, PRICE)
    fee_d = money(fee)
    tax_d = money(tax)
    if qty <= 0:
        raise ValidationError("Trade quantity must be positive")
    if px <= 0:
        raise ValidationError("Trade price must be positive")
    if fee_d < 0 or tax_d < 0:
        raise ValidationError("Fee and tax must be non-negative")

    p = get_portfolio(session, portfolio_id)
    get_asset(session, asset_id)
    policy = p.matching_policy
    trade_kwargs = dict(
        portfolio_id=portfolio_id,
        asset_id=asset_id,
        side=s,
        quantity=qty,
        price=px,
        fee=fee_d,
        tax=tax_d,
        trade_date=trade_date,
        source=source,
        notes=notes,
    )

    with keyed_lock(_lock_key(portfolio_id, asset_id)):
        try:
            ledger = _ensure_ledger(session, portfolio_id, asset_id)
            if expected_version is not None and ledger.version != expected_version:
                raise ConcurrencyConflict(
                    f"Ledger version is {ledger.version}, expected {expected_version} "
                    f"(portfolio {portfolio_id}, asset {asset_id})"
                )
            in_order = ledger.last_trade_date is None or trade_date >= ledger.last_trade_date

            t = Trade(**trade_kwargs)
            session.add(t)
            session.flush()
            row = TradeRow.from_model(t)

            if in_order:
                lots, matched = _open_buy_lots(session, portfolio_id, asset_id)
                matcher = LotMatcher(policy, open_lots=lots, matched=matched)
                new_matches = matcher.apply(row)
                involved = [lot.trade for lot in lots] + [row]
                check_matched_quantities(involved, matcher.matched)
                _add_matches(session, portfolio_id=portfolio_id, asset_id=asset_id, policy=policy, matches=new_matches)
                _write_states(session, involved, matcher.matched)
                matched_self = matcher.matched.get(row.id, ZERO)
            else:
                log.info(
                    "Backdated %s trade %s on %s (latest %s); replaying portfolio=%s asset=%s",
                    s,
                    t.id,
                    trade_date,
                    ledger.last_trade_date,
                    portfolio_id,
                    asset_id,
                )
                outcome = _replay_asset(session, portfolio_id=portfolio_id, asset_id=asset_id, policy=policy)
                new_matches = [m for m in outcome.matches if t.id in (m.buy_trade_id, m.sell_trade_id)]
                matched_self = outcome.matched_by_trade.get(row.id, ZERO)
                ledger.last_rematch_at = utcnow()

            cf = add_cash_flow(
                session,
                portfolio_id=portfolio_id,
                flow_date=trade_date,
                flow_type="TRADE_BUY" if s == "BUY" else "TRADE_SELL",
                amount=_settlement_amount(s, qty, px, fee_d, tax_d),
                reference_type="TRADE",
                reference_id=t.id,
                description=f"{s} {qty} @ {px}",
            )
            ledger.trade_count = (ledger.trade_count or 0) + 1
            if ledger.last_trade_date is None or trade_date > ledger.last_trade_date:
                ledger.last_trade_date = trade_date
            log_change(
                session,
                actor=actor,
                action="RECORD_TRADE",
                entity="Trade",
                entity_id=str(t.id),
                old=None,
                new={
                    "portfolio_id": portfolio_id,
                    "asset_id": asset_id,
                    "side": s,
                    "quantity": str(qty),
                    "price": str(px),
                    "trade_date": trade_date.isoformat(),
                    "matches": len(new_matches),
                    "rematched": not in_order,
                    "cash_flow_id": cf.id,
                },
            )
            session.flush()
            session.commit()
        except StaleDataError as e:
            session.rollback()
            raise ConcurrencyConflict(
                f"Concurrent trade recorded for portfolio {portfolio_id} asset {asset_id}; retry"
            ) from e
        except ValidationError:
            session.rollback()
            raise
        except IntegrityFault as e:
            session.rollback()
            log.error("Integrity fault matching trade portfolio=%s asset=%s: %s", portfolio_id, asset_id, e)
            _flag_unmatched(session, trade_kwargs=trade_kwargs, note=str(e), actor=actor)
            raise
        except Exception:
            session.rollback()
            raise

    return TradeResult(
        trade_id=t.id,
        status=match_status(row, matched_self),
        matches=list(new_matches),
        realized_pl=sum((m.realized_pl for m in new_matches if m.sell_trade_id == t.id), ZERO),
        remaining_quantity=row.quantity - matched_self,
        rematched=not in_order,
        ledger_version=ledger.version,
    )


def rematch_asset(session: Session, *, portfolio_id: int, asset_id: int, actor: str = "system") -> RematchResult:
    """
    Discard the derived matches of one (portfolio, asset) and replay its full trade
    history. A history that no longer replays cleanly is an integrity fault.
    """
    p = get_portfolio(session, portfolio_id)
    get_asset(session, asset_id)
    with keyed_lock(_lock_key(portfolio_id, asset_id)):
        try:
            ledger = _ensure_ledger(session, portfolio_id, asset_id)
            before = session.query(TradeMatch).filter(
                TradeMatch.portfolio_id == portfolio_id, TradeMatch.asset_id == asset_id
            ).count()
            try:
                outcome = _replay_asset(
                    session,
                    portfolio_id=portfolio_id,
                    asset_id=asset_id,
                    policy=p.matching_policy,
                    readmit=True,
                    actor=actor,
                )
            except ValidationError as e:
                raise IntegrityFault(f"Trade history for portfolio {portfolio_id} asset {asset_id} does not replay: {e}") from e
            ledger.trade_count = len(outcome.trades)
            ledger.last_trade_date = max((r.trade_date for r in outcome.trades), default=None)
            ledger.last_rematch_at = utcnow()
            log_change(
                session,
                actor=actor,
                action="REMATCH",
                entity="AssetLedger",
                entity_id=f"{portfolio_id}:{asset_id}",
                old={"matches": before},
                new={"matches": len(outcome.matches), "policy": p.matching_policy},
            )
            session.flush()
            session.commit()
        except StaleDataError as e:
            session.rollback()
            raise ConcurrencyConflict(f"Concurrent change to portfolio {portfolio_id} asset {asset_id}; retry") from e
        except IntegrityFault as e:
            session.rollback()
            log.error("Rematch failed portfolio=%s asset=%s: %s", portfolio_id, asset_id, e)
            raise
        except Exception:
            session.rollback()
            raise

    log.info(
        "Rematched portfolio=%s asset=%s trades=%s matches=%s",
        portfolio_id,
        asset_id,
        len(outcome.trades),
        len(outcome.matches),
    )
    return RematchResult(
        portfolio_id=portfolio_id,
        asset_id=asset_id,
        trades_replayed=len(outcome.trades),
        matches_created=len(outcome.matches),
        realized_pl=money(outcome.realized_pl),
        open_quantity=outcome.open_quantity,
    )


def list_matches(session: Session, *, portfolio_id: int, asset_id: Optional[int] = None) -> list[TradeMatch]:
    qry = session.query(TradeMatch).filter(TradeMatch.portfolio_id == portfolio_id)
    if asset_id is not None:
        qry = qry.filter(TradeMatch.asset_id == asset_id)
    return qry.order_by(TradeMatch.matched_date.asc(), TradeMatch.id.asc()).all()


def ledger_version(session: Session, *, portfolio_id: int, asset_id: int) -> Optional[int]:
    ledger = (
        session.query(AssetLedger)
        .filter(AssetLedger.portfolio_id == portfolio_id, AssetLedger.asset_id == asset_id)
        .one_or_none()
    )
    return ledger.version if ledger is not None else None
