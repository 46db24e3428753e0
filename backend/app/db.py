# backend/app/db.py
"""
SQLAlchemy wiring.

In production DATABASE_URL points at the Supabase Postgres instance; schema
migrations live with the Supabase project, ``init_db`` only exists for local
dev and tests (SQLite).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.config import settings

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)


def _sqlite_fk_pragma(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


def build_engine(url: str, echo: bool = False) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            db_path = url.split("sqlite:///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _sqlite_fk_pragma)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings.DATABASE_URL, echo=bool(settings.DB_ECHO))
        SessionLocal.configure(bind=_engine)
    return _engine


def set_engine(engine: Engine) -> None:
    """Swap the process engine (tests, CLI with --database-url)."""
    global _engine
    _engine = engine
    SessionLocal.configure(bind=engine)


def init_db() -> None:
    # models must be imported so their tables register on Base.metadata
    from backend.app import models  # noqa: F401

    engine = get_engine()
    Base.metadata.create_all(engine)
    log.info(f"[db] tables ensured on {engine.url.render_as_string(hide_password=True)}")


def get_db() -> Iterator[Session]:
    """FastAPI dependency: one session per request, commit on success."""
    get_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
