"""Soundmap transcode pipeline - SQLite ledger wiring.

The queue API and every worker process open the same SQLite file; each
process builds one engine and hands SqlJobQueue a session factory.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

from soundmap.config import DB_PATH
from soundmap.models import Base

# Seconds a connection waits on another process's write lock
_BUSY_TIMEOUT_SECONDS = 30


def get_database_url(db_path: str | Path | None = None) -> str:
    """SQLAlchemy URL for the ledger file (config.DB_PATH unless overridden)."""
    return f"sqlite:///{db_path if db_path is not None else DB_PATH}"


def create_db_engine(db_path: str | Path | None = None, echo: bool = False) -> Engine:
    # check_same_thread is off because worker slots are threads; sessions
    # themselves are never shared between slots.
    return create_engine(
        get_database_url(db_path),
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS},
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    # Queue rows are read after commit (Delivery, operator views), so keep
    # their attributes loaded.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(
    db_path: str | Path | None = None, echo: bool = False
) -> tuple[Engine, sessionmaker]:
    """Open the ledger and make sure the transcode_jobs table exists.

    Running it against an existing ledger leaves the stored jobs untouched,
    so every service calls it at startup.
    """
    if db_path is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    engine = create_db_engine(db_path, echo=echo)
    Base.metadata.create_all(engine)
    return engine, create_session_factory(engine)
