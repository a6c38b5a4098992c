from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import Settings, get_settings


def _connect_args(settings: Settings) -> dict[str, object]:
    # every ledger query is bounded by the driver timeout
    if settings.database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.ledger_timeout_secs}
    if settings.database_url.startswith("postgresql"):
        timeout_ms = int(settings.ledger_timeout_secs * 1000)
        return {"options": f"-c statement_timeout={timeout_ms}"}
    return {}


def _build_ledger_engine() -> Engine:
    settings = get_settings()
    ledger_engine = create_engine(
        settings.database_url,
        connect_args=_connect_args(settings),
        pool_pre_ping=True,
    )
    if settings.database_url.startswith("sqlite"):
        event.listen(ledger_engine, "connect", _sqlite_on_connect)
    return ledger_engine


def _sqlite_on_connect(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _build_ledger_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session that commits on success and rolls back on any error."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
