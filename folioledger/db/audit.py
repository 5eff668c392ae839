from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from folioledger.db.models import AuditLog
from folioledger.utils.time import utcnow


def _plain(value: Any) -> Any:
    # JSON columns cannot hold Decimal or date values.
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def log_change(
    session: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: Optional[str],
    old: Optional[dict[str, Any]],
    new: Optional[dict[str, Any]],
    note: Optional[str] = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    row = AuditLog(
        at=utcnow(),
        actor=(actor or "system").strip() or "system",
        action=action,
        entity=entity,
        entity_id=entity_id,
        old_json=_plain(old),
        new_json=_plain(new),
        note=note,
    )
    session.add(row)
    return row
