from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from folioledger.core.config import get_config
from folioledger.core.errors import NotFoundError, SnapshotInProgress, ValidationError
from folioledger.db.models import SnapshotExecution
from folioledger.utils.locks import keyed_lock
from folioledger.utils.time import ensure_utc, utcnow

log = logging.getLogger(__name__)

ACTIVE_STATUSES = ("started", "in_progress")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


def new_execution_id() -> str:
    return uuid.uuid4().hex


def _active_for_key(session: Session, *, portfolio_id: int, snapshot_date: dt.date, granularity: str) -> Optional[SnapshotExecution]:
    return (
        session.query(SnapshotExecution)
        .filter(
            SnapshotExecution.kind == "SINGLE",
            SnapshotExecution.portfolio_id == portfolio_id,
            SnapshotExecution.snapshot_date == snapshot_date,
            SnapshotExecution.granularity == granularity,
            SnapshotExecution.status.in_(ACTIVE_STATUSES),
        )
        .order_by(SnapshotExecution.started_at.asc())
        .populate_existing()
        .first()
    )


def start_execution(
    session: Session,
    *,
    snapshot_date: dt.date,
    granularity: str,
    portfolio_id: Optional[int] = None,
    kind: str = "SINGLE",
    trigger: str = "MANUAL",
    parent_execution_id: Optional[str] = None,
) -> SnapshotExecution:
    """
    Open an execution record. For a single-portfolio computation the record doubles
    as the mutual-exclusion signal for its (portfolio, date, granularity) key: an
    active record for the same key makes this call fail fast with SnapshotInProgress.
    """
    g = granularity.upper()
    k = kind.upper()
    if k == "SINGLE" and portfolio_id is None:
        raise ValidationError("A single snapshot execution needs a portfolio")

    with keyed_lock(("snapshot-exec", portfolio_id, snapshot_date, g)):
        if k == "SINGLE":
            reclassify_stale(session, portfolio_id=portfolio_id)
            active = _active_for_key(session, portfolio_id=portfolio_id, snapshot_date=snapshot_date, granularity=g)
            if active is not None:
                raise SnapshotInProgress(
                    f"Snapshot for portfolio {portfolio_id} {snapshot_date.isoformat()} {g} is already "
                    f"{active.status} (execution {active.execution_id})",
                    execution_id=active.execution_id,
                )
        ex = SnapshotExecution(
            execution_id=new_execution_id(),
            kind=k,
            trigger=(trigger or "MANUAL").upper(),
            parent_execution_id=parent_execution_id,
            portfolio_id=portfolio_id,
            snapshot_date=snapshot_date,
            granularity=g,
            status="started",
            started_at=utcnow(),
            total_portfolios=1 if k == "SINGLE" else 0,
            details_json={},
        )
        session.add(ex)
        session.commit()
    return ex


def get_execution(session: Session, execution_id: str) -> SnapshotExecution:
    ex = session.query(SnapshotExecution).filter(SnapshotExecution.execution_id == execution_id).one_or_none()
    if ex is None:
        raise NotFoundError(f"Execution {execution_id} not found")
    return ex


def mark_in_progress(session: Session, execution_id: str) -> SnapshotExecution:
    ex = get_execution(session, execution_id)
    if ex.status != "started":
        raise ValidationError(f"Execution {execution_id} is {ex.status}, not started")
    ex.status = "in_progress"
    session.commit()
    return ex


def finish_execution(
    session: Session,
    execution_id: str,
    *,
    status: str,
    error_message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    total_portfolios: Optional[int] = None,
    successful_portfolios: Optional[int] = None,
    failed_portfolios: Optional[int] = None,
    total_snapshots: Optional[int] = None,
) -> SnapshotExecution:
    st = status.lower()
    if st not in TERMINAL_STATUSES:
        raise ValidationError(f"Not a terminal execution status: {status}")
    ex = get_execution(session, execution_id)
    session.refresh(ex)
    if ex.status not in ACTIVE_STATUSES:
        # Reclassified as stale or cancelled while running; the earlier verdict stands.
        log.warning("Execution %s already %s; not marking %s", execution_id, ex.status, st)
        return ex
    now = utcnow()
    ex.status = st
    ex.finished_at = now
    ex.execution_time_ms = int((now - ensure_utc(ex.started_at)).total_seconds() * 1000)
    if error_message is not None:
        ex.error_message = error_message[:4000]
    if details is not None:
        ex.details_json = dict(details)
    if total_portfolios is not None:
        ex.total_portfolios = total_portfolios
    if successful_portfolios is not None:
        ex.successful_portfolios = successful_portfolios
    if failed_portfolios is not None:
        ex.failed_portfolios = failed_portfolios
    if total_snapshots is not None:
        ex.total_snapshots = total_snapshots
    session.commit()
    return ex


def reclassify_stale(
    session: Session,
    *,
    older_than_minutes: Optional[int] = None,
    portfolio_id: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> int:
    """
    Executions stuck in started/in_progress past the threshold become `failed`.
    They are not retried.
    """
    minutes = older_than_minutes if older_than_minutes is not None else get_config().stale_execution_minutes
    cutoff = (now or utcnow()) - dt.timedelta(minutes=minutes)
    qry = session.query(SnapshotExecution).filter(
        SnapshotExecution.status.in_(ACTIVE_STATUSES),
        SnapshotExecution.started_at < cutoff,
    )
    if portfolio_id is not None:
        qry = qry.filter(SnapshotExecution.portfolio_id == portfolio_id)
    rows = qry.all()
    for ex in rows:
        ex.error_message = f"stale: still {ex.status} after {minutes} minutes"
        ex.status = "failed"
        ex.finished_at = now or utcnow()
        log.warning("Reclassified stale execution %s (started %s) as failed", ex.execution_id, ex.started_at)
    if rows:
        session.commit()
    return len(rows)


def cancel_execution(session: Session, execution_id: str, *, reason: Optional[str] = None) -> SnapshotExecution:
    ex = get_execution(session, execution_id)
    if ex.status not in ACTIVE_STATUSES:
        raise ValidationError(f"Execution {execution_id} is {ex.status}; only active executions can be cancelled")
    ex.status = "cancelled"
    ex.finished_at = utcnow()
    ex.error_message = reason or "cancelled"
    session.commit()
    return ex


def list_executions(
    session: Session,
    *,
    status: Optional[str] = None,
    kind: Optional[str] = None,
    portfolio_id: Optional[int] = None,
    started_from: Optional[dt.datetime] = None,
    started_to: Optional[dt.datetime] = None,
    parent_execution_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[SnapshotExecution]:
    qry = session.query(SnapshotExecution)
    if status:
        qry = qry.filter(SnapshotExecution.status == status.lower())
    if kind:
        qry = qry.filter(SnapshotExecution.kind == kind.upper())
    if portfolio_id is not None:
        qry = qry.filter(SnapshotExecution.portfolio_id == portfolio_id)
    if started_from is not None:
        qry = qry.filter(SnapshotExecution.started_at >= started_from)
    if started_to is not None:
        qry = qry.filter(SnapshotExecution.started_at <= started_to)
    if parent_execution_id is not None:
        qry = qry.filter(SnapshotExecution.parent_execution_id == parent_execution_id)
    return (
        qry.order_by(SnapshotExecution.started_at.desc(), SnapshotExecution.id.desc())
        .offset(max(0, int(offset)))
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


def tracking_stats(session: Session, *, since: Optional[dt.datetime] = None, kind: Optional[str] = None) -> dict[str, Any]:
    base = session.query(SnapshotExecution)
    if since is not None:
        base = base.filter(SnapshotExecution.started_at >= since)
    if kind:
        base = base.filter(SnapshotExecution.kind == kind.upper())

    by_status = {s: 0 for s in ACTIVE_STATUSES + TERMINAL_STATUSES}
    for st, n in base.with_entities(SnapshotExecution.status, func.count(SnapshotExecution.id)).group_by(SnapshotExecution.status).all():
        by_status[str(st)] = int(n)
    total = sum(by_status.values())
    finished = by_status["completed"] + by_status["failed"]

    avg_ms = base.with_entities(func.avg(SnapshotExecution.execution_time_ms)).filter(
        SnapshotExecution.execution_time_ms.isnot(None)
    ).scalar()
    snapshots = base.with_entities(func.coalesce(func.sum(SnapshotExecution.total_snapshots), 0)).scalar()
    return {
        "total": total,
        "by_status": by_status,
        "success_rate": (by_status["completed"] / finished) if finished else None,
        "avg_execution_time_ms": float(avg_ms) if avg_ms is not None else None,
        "total_snapshots": int(snapshots or 0),
    }


def cleanup_executions(session: Session, *, older_than_days: int, now: Optional[dt.datetime] = None) -> int:
    if older_than_days < 0:
        raise ValidationError("older_than_days must be >= 0")
    cutoff = (now or utcnow()) - dt.timedelta(days=older_than_days)
    n = (
        session.query(SnapshotExecution)
        .filter(SnapshotExecution.status.in_(TERMINAL_STATUSES), SnapshotExecution.started_at < cutoff)
        .delete(synchronize_session="fetch")
    )
    session.commit()
    if n:
        log.info("Deleted %s execution record(s) started before %s", n, cutoff.isoformat())
    return int(n)


def execution_as_json(ex: SnapshotExecution) -> dict[str, Any]:
    return {
        "execution_id": ex.execution_id,
        "kind": ex.kind,
        "trigger": ex.trigger,
        "parent_execution_id": ex.parent_execution_id,
        "portfolio_id": ex.portfolio_id,
        "snapshot_date": ex.snapshot_date.isoformat(),
        "granularity": ex.granularity,
        "status": ex.status,
        "started_at": ex.started_at.isoformat() if ex.started_at else None,
        "finished_at": ex.finished_at.isoformat() if ex.finished_at else None,
        "total_portfolios": ex.total_portfolios,
        "successful_portfolios": ex.successful_portfolios,
        "failed_portfolios": ex.failed_portfolios,
        "total_snapshots": ex.total_snapshots,
        "execution_time_ms": ex.execution_time_ms,
        "error_message": ex.error_message,
        "details": ex.details_json or {},
    }
