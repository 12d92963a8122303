"""Database engine and session management.

The booking core uses a synchronous SQLAlchemy engine; async request
handlers offload store access to a worker thread.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_agent.config import DATABASE_URL, DB_ECHO
from clinic_agent.db.models import Base

logger = logging.getLogger(__name__)

SessionFactory = sessionmaker[Session]


def create_db_engine(url: str | None = None, *, echo: bool = DB_ECHO) -> Engine:
    """Create an engine for *url* (defaults to ``DATABASE_URL``).

    SQLite connections are shared across threads (FastAPI runs store calls
    in a thread pool); an in-memory SQLite database is pinned to a single
    connection so every session sees the same data.
    """
    url = url or DATABASE_URL
    kwargs: dict = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(url, **kwargs)
    logger.info("Database engine created (%s)", engine.url.render_as_string(hide_password=True))
    return engine


def init_db(engine: Engine) -> None:
    """Create any missing tables and indexes."""
    Base.metadata.create_all(engine)


def create_session_factory(engine: Engine) -> SessionFactory:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
