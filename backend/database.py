"""
Database engine and session management.

Reads DATABASE_URL from the environment. Production and staging must point at
PostgreSQL; local development falls back to a SQLite file.
"""

import logging
import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_URL = "sqlite:///./todolisti.db"


def _is_production_like() -> bool:
    env = os.environ.get("ENVIRONMENT", "development").lower()
    return env in ("production", "staging")


DATABASE_URL = os.environ.get("DATABASE_URL")
if not DATABASE_URL:
    if _is_production_like():
        raise ValueError(
            "DATABASE_URL environment variable is required in production. "
            "Example: postgresql://todolisti:<password>@db:5432/todolisti"
        )
    DATABASE_URL = DEFAULT_SQLITE_URL
    logger.warning(
        f"⚠️  DATABASE_URL not set! Using local development database {DEFAULT_SQLITE_URL}."
    )


def make_engine(db_url: str, **kwargs):
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite connections are shared across FastAPI's threadpool, so
    check_same_thread is disabled for them.
    """
    connect_args = kwargs.pop("connect_args", {})
    if db_url.startswith("sqlite") and "check_same_thread" not in connect_args:
        connect_args["check_same_thread"] = False
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(db_url, connect_args=connect_args, **kwargs)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a database session, closed after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(target_engine=None) -> None:
    """
    Create missing tables.

    Only used for SQLite development databases; PostgreSQL schemas are
    managed outside the application.
    """
    import models  # noqa: F401  (registers tables on Base.metadata)

    target_engine = target_engine or engine
    Base.metadata.create_all(bind=target_engine)
    logger.info(f"Database tables created/verified on {target_engine.url.drivername}")
