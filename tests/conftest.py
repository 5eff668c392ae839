from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from folioledger.core.config import LedgerConfig, set_config
from folioledger.db.models import Base
from folioledger.db.session import make_engine, make_session_factory


@pytest.fixture(autouse=True)
def ledger_config():
    cfg = LedgerConfig(database_url="sqlite:///:memory:")
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)
    with SessionLocal() as s:
        yield s


@pytest.fixture()
def session_factory(tmp_path):
    # Worker threads each open their own connection, so bulk runs need a file database.
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    factory = make_session_factory(engine)
    yield factory
    engine.dispose()
