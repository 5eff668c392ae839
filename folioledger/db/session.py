from __future__ import annotations

from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from folioledger.core.config import get_config

SessionFactory = Callable[[], Session]


def get_database_url() -> str:
    return get_config().database_url


_ENGINE: Engine | None = None
_FACTORY: sessionmaker | None = None


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is not None:
        return _ENGINE
    _ENGINE = make_engine(get_database_url())
    return _ENGINE


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    global _FACTORY
    if _FACTORY is None:
        _FACTORY = make_session_factory(get_engine())
    return _FACTORY


def get_session() -> Session:
    return get_session_factory()()
