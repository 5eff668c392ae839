from __future__ import annotations

import datetime as dt
import json
from typing import Any, Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="folioledger: position ledger and snapshot engine")


def _bootstrap() -> None:
    load_dotenv()
    from folioledger.core.config import get_config
    from folioledger.utils.log_setup import setup_logging

    setup_logging(get_config().log_level)


def _echo(payload: Any) -> None:
    from folioledger.app.utils import jsonable

    typer.echo(json.dumps(jsonable(payload), indent=2))


def _parse_day(value: Optional[str]) -> dt.date:
    from folioledger.utils.time import parse_date

    if not value:
        return dt.date.today()
    d = parse_date(value)
    if d is None:
        raise typer.BadParameter(f"Not a date: {value}")
    return d


def _fail(e: Exception) -> None:
    typer.echo(f"{type(e).__name__}: {e}", err=True)
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db_cmd():
    _bootstrap()
    from folioledger.db.init_db import init_db
    from folioledger.db.session import get_database_url

    init_db()
    typer.echo(f"Initialized {get_database_url()}")


@app.command("create-portfolio")
def create_portfolio_cmd(
    name: str = typer.Option(...),
    fund: bool = typer.Option(False, help="Create as a fund portfolio"),
    policy: Optional[str] = typer.Option(None, help="FIFO|LIFO"),
    seed_nav: Optional[str] = typer.Option(None, help="Seed NAV per unit for funds"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.portfolio_store import create_portfolio
    from folioledger.db.session import get_session

    with get_session() as session:
        try:
            p = create_portfolio(session, name=name, is_fund=fund, matching_policy=policy, seed_nav_per_unit=seed_nav, actor=actor)
        except LedgerError as e:
            _fail(e)
        _echo({"id": p.id, "name": p.name, "is_fund": p.is_fund, "matching_policy": p.matching_policy})


@app.command("record-trade")
def record_trade_cmd(
    portfolio_id: int = typer.Option(...),
    symbol: str = typer.Option(..., help="Asset symbol (created if unknown)"),
    side: str = typer.Option(..., help="BUY|SELL"),
    quantity: str = typer.Option(...),
    price: str = typer.Option(...),
    trade_date: Optional[str] = typer.Option(None, help="YYYY-MM-DD (default today)"),
    fee: str = typer.Option("0"),
    tax: str = typer.Option("0"),
    asset_type: str = typer.Option("STOCK"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.portfolio_store import create_asset
    from folioledger.core.trades import record_trade
    from folioledger.db.session import get_session

    with get_session() as session:
        try:
            asset = create_asset(session, symbol=symbol, asset_type=asset_type)
            res = record_trade(
                session,
                portfolio_id=portfolio_id,
                asset_id=asset.id,
                side=side,
                quantity=quantity,
                price=price,
                trade_date=_parse_day(trade_date),
                fee=fee,
                tax=tax,
                source="CLI",
                actor=actor,
            )
        except LedgerError as e:
            _fail(e)
        _echo(res.as_json())


@app.command("record-price")
def record_price_cmd(
    symbol: str = typer.Option(...),
    price: str = typer.Option(...),
    price_date: Optional[str] = typer.Option(None, help="YYYY-MM-DD (default today)"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.portfolio_store import create_asset, record_price
    from folioledger.db.session import get_session

    with get_session() as session:
        try:
            asset = create_asset(session, symbol=symbol)
            row = record_price(session, asset_id=asset.id, price_date=_parse_day(price_date), price=price, source="CLI")
        except LedgerError as e:
            _fail(e)
        _echo({"asset_id": row.asset_id, "price_date": row.price_date, "price": row.price})


@app.command("position")
def position_cmd(
    portfolio_id: int = typer.Option(...),
    as_of: Optional[str] = typer.Option(None, help="Point-in-time date (default: current state)"),
    include_closed: bool = typer.Option(False),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.positions import list_positions
    from folioledger.db.session import get_session

    with get_session() as session:
        try:
            rows = list_positions(session, portfolio_id, as_of=_parse_day(as_of) if as_of else None, include_closed=include_closed)
        except LedgerError as e:
            _fail(e)
        _echo([p.as_json() for p in rows])


@app.command("snapshot")
def snapshot_cmd(
    portfolio_id: int = typer.Option(...),
    snapshot_date: Optional[str] = typer.Option(None, "--date", help="YYYY-MM-DD (default today)"),
    granularity: str = typer.Option("DAILY", help="DAILY|WEEKLY|MONTHLY"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.snapshots import create_or_recalculate_snapshot
    from folioledger.db.session import get_session

    with get_session() as session:
        try:
            res = create_or_recalculate_snapshot(
                session,
                portfolio_id=portfolio_id,
                snapshot_date=_parse_day(snapshot_date),
                granularity=granularity,
                trigger="MANUAL",
            )
        except LedgerError as e:
            _fail(e)
        _echo(res.as_json())


@app.command("run-snapshots")
def run_snapshots_cmd(
    snapshot_date: Optional[str] = typer.Option(None, "--date", help="YYYY-MM-DD (default today)"),
    granularity: str = typer.Option("DAILY", help="DAILY|WEEKLY|MONTHLY"),
    portfolio_id: Optional[list[int]] = typer.Option(None, help="Limit to these portfolios (repeatable)"),
    workers: Optional[int] = typer.Option(None, help="Parallel portfolios (default from config)"),
    trigger: str = typer.Option("SCHEDULED", help="SCHEDULED|MANUAL"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.snapshot_runner import run_snapshots
    from folioledger.db.session import get_session_factory

    try:
        summary = run_snapshots(
            get_session_factory(),
            snapshot_date=_parse_day(snapshot_date),
            granularity=granularity,
            scope=portfolio_id or None,
            trigger=trigger,
            max_workers=workers,
        )
    except LedgerError as e:
        _fail(e)
    _echo(summary.as_json())
    if summary.status == "failed":
        raise typer.Exit(code=1)


@app.command("backfill")
def backfill_cmd(
    portfolio_id: int = typer.Option(...),
    start: str = typer.Option(..., help="YYYY-MM-DD"),
    end: Optional[str] = typer.Option(None, help="YYYY-MM-DD (default today)"),
    granularity: str = typer.Option("DAILY", help="DAILY|WEEKLY|MONTHLY"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.snapshot_runner import run_snapshot_range
    from folioledger.db.session import get_session_factory

    try:
        summary = run_snapshot_range(
            get_session_factory(),
            portfolio_id=portfolio_id,
            start=_parse_day(start),
            end=_parse_day(end),
            granularity=granularity,
        )
    except LedgerError as e:
        _fail(e)
    _echo(summary.as_json())


@app.command("executions")
def executions_cmd(
    status: Optional[str] = typer.Option(None, help="started|in_progress|completed|failed|cancelled"),
    portfolio_id: Optional[int] = typer.Option(None),
    limit: int = typer.Option(20),
    stats: bool = typer.Option(False, help="Show aggregate stats instead of records"),
    reclassify: bool = typer.Option(False, help="Mark stuck executions as failed first"),
    cleanup_days: Optional[int] = typer.Option(None, help="Delete finished records older than N days"),
):
    _bootstrap()
    from folioledger.core.executions import (
        cleanup_executions,
        execution_as_json,
        list_executions,
        reclassify_stale,
        tracking_stats,
    )
    from folioledger.db.session import get_session

    with get_session() as session:
        if reclassify:
            typer.echo(f"Reclassified {reclassify_stale(session)} stale execution(s)")
        if cleanup_days is not None:
            typer.echo(f"Deleted {cleanup_executions(session, older_than_days=cleanup_days)} execution record(s)")
        if stats:
            _echo(tracking_stats(session))
            return
        rows = list_executions(session, status=status, portfolio_id=portfolio_id, limit=limit)
        _echo([execution_as_json(ex) for ex in rows])


@app.command("subscribe")
def subscribe_cmd(
    portfolio_id: int = typer.Option(...),
    account: str = typer.Option(..., help="Investor account name (created if unknown)"),
    amount: str = typer.Option(...),
    effective_date: Optional[str] = typer.Option(None, "--date", help="YYYY-MM-DD (default today)"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.funds import subscribe
    from folioledger.core.portfolio_store import create_account
    from folioledger.db.session import get_session

    with get_session() as session:
        try:
            acct = create_account(session, name=account)
            res = subscribe(
                session,
                portfolio_id=portfolio_id,
                account_id=acct.id,
                amount=amount,
                effective_date=_parse_day(effective_date),
                actor=actor,
            )
        except LedgerError as e:
            _fail(e)
        _echo(res.as_json())


@app.command("redeem")
def redeem_cmd(
    portfolio_id: int = typer.Option(...),
    account: str = typer.Option(..., help="Investor account name"),
    units: str = typer.Option(...),
    effective_date: Optional[str] = typer.Option(None, "--date", help="YYYY-MM-DD (default today)"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.funds import redeem
    from folioledger.db.models import Account
    from folioledger.db.session import get_session

    with get_session() as session:
        acct = session.query(Account).filter(Account.name == account.strip()).one_or_none()
        if acct is None:
            typer.echo(f"Unknown account: {account}", err=True)
            raise typer.Exit(code=2)
        try:
            res = redeem(
                session,
                portfolio_id=portfolio_id,
                account_id=acct.id,
                units=units,
                effective_date=_parse_day(effective_date),
                actor=actor,
            )
        except LedgerError as e:
            _fail(e)
        _echo(res.as_json())


@app.command("rebuild")
def rebuild_cmd(
    portfolio_id: int = typer.Option(...),
    verify_only: bool = typer.Option(False, help="Compare derived state with a replay; change nothing"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    _bootstrap()
    from folioledger.core.errors import LedgerError
    from folioledger.core.recovery import rebuild_portfolio, verify_portfolio
    from folioledger.db.session import get_session

    with get_session() as session:
        try:
            if verify_only:
                out = verify_portfolio(session, portfolio_id=portfolio_id)
                _echo(out)
                if not out["ok"]:
                    raise typer.Exit(code=1)
                return
            _echo(rebuild_portfolio(session, portfolio_id=portfolio_id, actor=actor))
        except LedgerError as e:
            _fail(e)


if __name__ == "__main__":
    app()
