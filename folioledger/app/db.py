from __future__ import annotations

from collections.abc import Generator

from sqlalchemy.orm import Session

from folioledger.db.session import SessionFactory, get_session, get_session_factory


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        # Core operations roll back their own work; this covers failures between them.
        session.rollback()
        raise
    finally:
        session.close()


def session_factory() -> SessionFactory:
    """Bulk runs open one session per portfolio, so they take the factory."""
    return get_session_factory()
