"""
Engine and session factory for the raffle ledger.
Without DATABASE_URL the games, tickets and draws live in a SQLite file beside this module.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base


def _normalize_url(url: str) -> str:
    # Hosted Postgres often hands out postgres://, which SQLAlchemy 2.x no longer accepts
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


_configured_url = os.environ.get("DATABASE_URL")
if _configured_url:
    DATABASE_URL = _normalize_url(_configured_url)
else:
    DB_DIR = os.path.dirname(os.path.abspath(__file__))
    DATABASE_URL = f"sqlite:///{os.path.join(DB_DIR, 'raffle.db')}"

# Request handlers and draw sessions share the SQLite connection across threads
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Request-scoped session, closed once the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create missing ledger tables; existing tables are left alone."""
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def get_db_file_path() -> str | None:
    """Path of the SQLite file in use, or None for other backends."""
    if DATABASE_URL.startswith("sqlite:///"):
        return DATABASE_URL[len("sqlite:///"):]
    return None
