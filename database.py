from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings

SQLITE_BUSY_TIMEOUT_MS = 5000


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Engine for the ledger store; SQLite gets WAL, FK enforcement and a busy wait."""
    url = database_url or get_settings().database_url
    if _is_sqlite(url):
        eng = create_engine(url, connect_args={"check_same_thread": False})
        event.listen(eng, "connect", enable_sqlite_pragmas)
        return eng
    return create_engine(url, pool_pre_ping=True)


def enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
    cursor.close()


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(
    factory: Callable[[], Session] = SessionLocal,
) -> Iterator[Session]:
    """Unit of work for background jobs: commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
