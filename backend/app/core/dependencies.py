"""Database engine and the request-scoped session dependency."""

from collections.abc import Generator
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings


def build_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    # Sync sessions are used from FastAPI's threadpool.
    connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


@lru_cache
def session_factory() -> Optional[sessionmaker]:
    database_url = get_settings().database_url
    if not database_url:
        return None
    return sessionmaker(autocommit=False, autoflush=False, bind=build_engine(database_url))


def get_db() -> Generator[Session, None, None]:
    factory = session_factory()
    if factory is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = factory()
    try:
        yield db
    finally:
        db.close()
