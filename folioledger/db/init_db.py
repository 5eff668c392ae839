from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine

from folioledger.db.models import Base
from folioledger.db.session import get_engine


def init_db(engine: Engine | None = None) -> None:
    engine = engine or get_engine()
    url = str(engine.url)
    if url.startswith("sqlite:///") and not url.endswith(":memory:"):
        Path(url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
