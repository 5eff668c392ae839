from __future__ import annotations

import datetime as dt
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from folioledger.core.config import get_config
from folioledger.core.errors import ConcurrencyConflict, NotFoundError, ValidationError
from folioledger.core.executions import finish_execution, mark_in_progress, start_execution
from folioledger.core.snapshots import create_or_recalculate_snapshot, normalize_granularity
from folioledger.db.models import Portfolio
from folioledger.db.session import SessionFactory
from folioledger.utils.time import sampling_dates

log = logging.getLogger(__name__)


@dataclass
class PortfolioRunResult:
    portfolio_id: int
    snapshot_date: dt.date
    status: str  # completed | failed | skipped
    execution_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    snapshots: int = 0
    gaps: list[dict[str, Any]] = field(default_factory=list)

    def as_json(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "snapshot_date": self.snapshot_date.isoformat(),
            "status": self.status,
            "execution_id": self.execution_id,
            "error": self.error,
            "retryable": self.retryable,
            "snapshots": self.snapshots,
            "gaps": self.gaps,
        }


@dataclass
class RunSummary:
    execution_id: str
    granularity: str
    status: str
    results: list[PortfolioRunResult] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.status == "completed")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status != "completed")

    @property
    def total_snapshots(self) -> int:
        return sum(r.snapshots for r in self.results)

    @property
    def gaps(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for r in self.results:
            for g in r.gaps:
                out.append({"portfolio_id": r.portfolio_id, **g})
        return out

    def as_json(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "granularity": self.granularity,
            "status": self.status,
            "total": len(self.results),
            "successful": self.successful,
            "failed": self.failed,
            "total_snapshots": self.total_snapshots,
            "results": [r.as_json() for r in self.results],
        }


def _snapshot_one(
    session_factory: SessionFactory,
    *,
    portfolio_id: int,
    snapshot_date: dt.date,
    granularity: str,
    trigger: str,
    parent_execution_id: str,
) -> PortfolioRunResult:
    session = session_factory()
    try:
        res = create_or_recalculate_snapshot(
            session,
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            granularity=granularity,
            trigger=trigger,
            parent_execution_id=parent_execution_id,
        )
        return PortfolioRunResult(
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            status="completed",
            execution_id=res.execution_id,
            snapshots=1 + len(res.asset_snapshots),
            gaps=list(res.gaps),
        )
    except ConcurrencyConflict as e:
        log.info("Skipped portfolio=%s date=%s: %s", portfolio_id, snapshot_date, e)
        return PortfolioRunResult(
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            status="skipped",
            execution_id=getattr(e, "execution_id", None),
            error=str(e),
            retryable=True,
        )
    except Exception as e:
        # One portfolio's failure never aborts the rest of the run.
        log.warning("Snapshot failed portfolio=%s date=%s: %s: %s", portfolio_id, snapshot_date, type(e).__name__, e)
        return PortfolioRunResult(
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            status="failed",
            error=f"{type(e).__name__}: {e}",
        )
    finally:
        session.close()


def _scope_ids(session_factory: SessionFactory, scope: Optional[Iterable[int]]) -> list[int]:
    session = session_factory()
    try:
        qry = session.query(Portfolio.id)
        if scope is not None:
            ids = sorted({int(x) for x in scope})
            found = {int(r[0]) for r in qry.filter(Portfolio.id.in_(ids)).all()}
            missing = [i for i in ids if i not in found]
            if missing:
                raise NotFoundError(f"Portfolio(s) not found: {missing}")
            return ids
        return sorted(int(r[0]) for r in qry.all())
    finally:
        session.close()


def _finish_bulk(session_factory: SessionFactory, summary: RunSummary) -> None:
    total = len(summary.results)
    if total and summary.successful == 0:
        summary.status = "failed"
    else:
        summary.status = "completed"
    session = session_factory()
    try:
        finish_execution(
            session,
            summary.execution_id,
            status=summary.status,
            error_message=None if summary.failed == 0 else f"{summary.failed} of {total} portfolio run(s) did not complete",
            details={"results": [r.as_json() for r in summary.results], "gaps": summary.gaps},
            total_portfolios=len({r.portfolio_id for r in summary.results}),
            successful_portfolios=len({r.portfolio_id for r in summary.results if r.status == "completed"}),
            failed_portfolios=len({r.portfolio_id for r in summary.results if r.status != "completed"}),
            total_snapshots=summary.total_snapshots,
        )
    finally:
        session.close()


def _open_bulk(
    session_factory: SessionFactory,
    *,
    snapshot_date: dt.date,
    granularity: str,
    trigger: str,
    portfolio_id: Optional[int] = None,
) -> str:
    session = session_factory()
    try:
        ex = start_execution(
            session,
            kind="BULK",
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            granularity=granularity,
            trigger=trigger,
        )
        mark_in_progress(session, ex.execution_id)
        return ex.execution_id
    finally:
        session.close()


def run_snapshots(
    session_factory: SessionFactory,
    *,
    snapshot_date: dt.date,
    granularity: str,
    scope: Optional[Iterable[int]] = None,
    trigger: str = "SCHEDULED",
    max_workers: Optional[int] = None,
) -> RunSummary:
    """
    Snapshot every portfolio in `scope` (all portfolios by default) for one date.

    Portfolios run independently, in parallel when `max_workers` > 1; failures are
    tallied in the returned summary and in the bulk execution record.
    """
    g = normalize_granularity(granularity)
    ids = _scope_ids(session_factory, scope)
    workers = max_workers if max_workers is not None else get_config().bulk_max_workers
    bulk_id = _open_bulk(session_factory, snapshot_date=snapshot_date, granularity=g, trigger=trigger)
    summary = RunSummary(execution_id=bulk_id, granularity=g, status="in_progress")
    log.info("Bulk snapshot %s: %s portfolio(s) date=%s %s workers=%s", bulk_id, len(ids), snapshot_date, g, workers)

    kwargs = dict(snapshot_date=snapshot_date, granularity=g, trigger=trigger, parent_execution_id=bulk_id)
    if workers <= 1 or len(ids) <= 1:
        for pid in ids:
            summary.results.append(_snapshot_one(session_factory, portfolio_id=pid, **kwargs))
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_snapshot_one, session_factory, portfolio_id=pid, **kwargs) for pid in ids]
            for fut in as_completed(futures):
                summary.results.append(fut.result())
        summary.results.sort(key=lambda r: r.portfolio_id)

    _finish_bulk(session_factory, summary)
    log.info(
        "Bulk snapshot %s %s: ok=%s failed=%s snapshots=%s",
        bulk_id,
        summary.status,
        summary.successful,
        summary.failed,
        summary.total_snapshots,
    )
    return summary


def run_snapshot_range(
    session_factory: SessionFactory,
    *,
    portfolio_id: int,
    start: dt.date,
    end: dt.date,
    granularity: str,
    trigger: str = "MANUAL",
) -> RunSummary:
    """
    Backfill one portfolio over [start, end] at the granularity's sampling dates.

    Dates run strictly in order: each date's returns, volatility and drawdown read
    the snapshots written before it. A failed date is recorded and the run moves on.
    """
    g = normalize_granularity(granularity)
    if end < start:
        raise ValidationError("end must be on or after start")
    _scope_ids(session_factory, [portfolio_id])
    dates = sampling_dates(start, end, g)
    bulk_id = _open_bulk(session_factory, snapshot_date=end, granularity=g, trigger=trigger, portfolio_id=portfolio_id)
    summary = RunSummary(execution_id=bulk_id, granularity=g, status="in_progress")
    for d in dates:
        summary.results.append(
            _snapshot_one(
                session_factory,
                portfolio_id=portfolio_id,
                snapshot_date=d,
                granularity=g,
                trigger=trigger,
                parent_execution_id=bulk_id,
            )
        )
    _finish_bulk(session_factory, summary)
    log.info(
        "Range snapshot %s portfolio=%s %s..%s %s: ok=%s failed=%s",
        bulk_id,
        portfolio_id,
        start,
        end,
        g,
        summary.successful,
        summary.failed,
    )
    return summary
