from __future__ import annotations

import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from folioledger.app.db import db_session, session_factory
from folioledger.core.errors import NotFoundError
from folioledger.core.executions import (
    cancel_execution,
    execution_as_json,
    get_execution,
    list_executions,
    reclassify_stale,
    tracking_stats,
)
from folioledger.core.snapshot_runner import run_snapshot_range, run_snapshots
from folioledger.core.snapshots import (
    allocation_timeline,
    asset_group_snapshot_as_json,
    asset_snapshot_as_json,
    create_or_recalculate_snapshot,
    get_portfolio_snapshot,
    list_asset_group_snapshots,
    list_asset_snapshots,
    list_portfolio_snapshots,
    portfolio_snapshot_as_json,
)
from folioledger.db.session import SessionFactory


router = APIRouter(prefix="/api", tags=["snapshots"])


class SnapshotIn(BaseModel):
    snapshot_date: dt.date
    granularity: str = "DAILY"


class BulkRunIn(BaseModel):
    snapshot_date: dt.date
    granularity: str = "DAILY"
    portfolio_ids: Optional[list[int]] = None
    max_workers: Optional[int] = None


class RangeRunIn(BaseModel):
    start: dt.date
    end: dt.date
    granularity: str = "DAILY"


@router.post("/portfolios/{portfolio_id}/snapshots")
def recalculate_snapshot_api(portfolio_id: int, body: SnapshotIn, session: Session = Depends(db_session)):
    res = create_or_recalculate_snapshot(
        session,
        portfolio_id=portfolio_id,
        snapshot_date=body.snapshot_date,
        granularity=body.granularity,
        trigger="MANUAL",
    )
    return res.as_json()


@router.get("/portfolios/{portfolio_id}/snapshots")
def list_snapshots_api(
    portfolio_id: int,
    granularity: str = "DAILY",
    start: Optional[dt.date] = None,
    end: Optional[dt.date] = None,
    session: Session = Depends(db_session),
):
    rows = list_portfolio_snapshots(session, portfolio_id=portfolio_id, granularity=granularity, start=start, end=end)
    return [portfolio_snapshot_as_json(ps) for ps in rows]


@router.get("/portfolios/{portfolio_id}/snapshots/{snapshot_date}")
def get_snapshot_api(portfolio_id: int, snapshot_date: dt.date, granularity: str = "DAILY", session: Session = Depends(db_session)):
    ps = get_portfolio_snapshot(session, portfolio_id=portfolio_id, snapshot_date=snapshot_date, granularity=granularity)
    if ps is None:
        raise NotFoundError(f"No {granularity} snapshot for portfolio {portfolio_id} on {snapshot_date.isoformat()}")
    out = portfolio_snapshot_as_json(ps)
    out["assets"] = [
        asset_snapshot_as_json(a)
        for a in list_asset_snapshots(session, portfolio_id=portfolio_id, snapshot_date=snapshot_date, granularity=granularity)
    ]
    out["groups"] = [
        asset_group_snapshot_as_json(g)
        for g in list_asset_group_snapshots(session, portfolio_id=portfolio_id, snapshot_date=snapshot_date, granularity=granularity)
    ]
    return out


@router.get("/portfolios/{portfolio_id}/allocation")
def allocation_timeline_api(
    portfolio_id: int,
    start: dt.date,
    end: dt.date,
    granularity: str = "DAILY",
    session: Session = Depends(db_session),
):
    return allocation_timeline(session, portfolio_id=portfolio_id, start=start, end=end, granularity=granularity)


@router.post("/snapshots/run")
def run_snapshots_api(body: BulkRunIn, factory: SessionFactory = Depends(session_factory)):
    summary = run_snapshots(
        factory,
        snapshot_date=body.snapshot_date,
        granularity=body.granularity,
        scope=body.portfolio_ids,
        trigger="MANUAL",
        max_workers=body.max_workers,
    )
    return summary.as_json()


@router.post("/portfolios/{portfolio_id}/snapshots/range")
def run_range_api(portfolio_id: int, body: RangeRunIn, factory: SessionFactory = Depends(session_factory)):
    summary = run_snapshot_range(
        factory,
        portfolio_id=portfolio_id,
        start=body.start,
        end=body.end,
        granularity=body.granularity,
    )
    return summary.as_json()


@router.get("/executions")
def list_executions_api(
    status: Optional[str] = None,
    kind: Optional[str] = None,
    portfolio_id: Optional[int] = None,
    started_from: Optional[dt.datetime] = None,
    started_to: Optional[dt.datetime] = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(db_session),
):
    rows = list_executions(
        session,
        status=status,
        kind=kind,
        portfolio_id=portfolio_id,
        started_from=started_from,
        started_to=started_to,
        limit=limit,
        offset=offset,
    )
    return [execution_as_json(ex) for ex in rows]


@router.get("/executions/stats")
def execution_stats_api(since: Optional[dt.datetime] = None, session: Session = Depends(db_session)):
    return tracking_stats(session, since=since)


@router.post("/executions/reclassify-stale")
def reclassify_stale_api(older_than_minutes: Optional[int] = None, session: Session = Depends(db_session)):
    return {"reclassified": reclassify_stale(session, older_than_minutes=older_than_minutes)}


@router.get("/executions/{execution_id}")
def get_execution_api(execution_id: str, session: Session = Depends(db_session)):
    return execution_as_json(get_execution(session, execution_id))


@router.post("/executions/{execution_id}/cancel")
def cancel_execution_api(execution_id: str, reason: Optional[str] = None, session: Session = Depends(db_session)):
    return execution_as_json(cancel_execution(session, execution_id, reason=reason))
