from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from folioledger.core.funds import rebuild_holdings
from folioledger.core.portfolio_store import get_portfolio
from folioledger.core.positions import verify_asset_ledger
from folioledger.core.trades import rematch_asset
from folioledger.db.audit import log_change
from folioledger.db.models import Trade

log = logging.getLogger(__name__)


def rebuild_portfolio(session: Session, *, portfolio_id: int, actor: str = "system") -> dict[str, Any]:
    """
    Recovery path: replay every asset's trades into fresh matches and, for funds,
    replay the unit transactions into fresh holdings. Snapshots are left alone;
    re-run them afterwards for the affected dates.
    """
    p = get_portfolio(session, portfolio_id)
    asset_ids = sorted(
        {int(r[0]) for r in session.query(Trade.asset_id).filter(Trade.portfolio_id == portfolio_id).distinct().all()}
    )
    assets: list[dict[str, Any]] = []
    for aid in asset_ids:
        res = rematch_asset(session, portfolio_id=portfolio_id, asset_id=aid, actor=actor)
        check = verify_asset_ledger(session, portfolio_id, aid)
        out = res.as_json()
        out["verified"] = check.ok
        assets.append(out)

    holdings = rebuild_holdings(session, portfolio_id=portfolio_id, actor=actor) if p.is_fund else None

    log_change(
        session,
        actor=actor,
        action="REBUILD_PORTFOLIO",
        entity="Portfolio",
        entity_id=str(portfolio_id),
        old=None,
        new={"assets": len(asset_ids), "fund": p.is_fund},
    )
    session.commit()
    log.info("Rebuilt portfolio=%s assets=%s fund=%s", portfolio_id, len(asset_ids), p.is_fund)
    return {"portfolio_id": portfolio_id, "assets": assets, "holdings": holdings}


def verify_portfolio(session: Session, *, portfolio_id: int) -> dict[str, Any]:
    get_portfolio(session, portfolio_id)
    asset_ids = sorted(
        {int(r[0]) for r in session.query(Trade.asset_id).filter(Trade.portfolio_id == portfolio_id).distinct().all()}
    )
    issues: dict[str, list[str]] = {}
    for aid in asset_ids:
        check = verify_asset_ledger(session, portfolio_id, aid)
        if not check.ok:
            issues[str(aid)] = check.issues
    return {"portfolio_id": portfolio_id, "assets_checked": len(asset_ids), "ok": not issues, "issues": issues}
