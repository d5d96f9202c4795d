#!/usr/bin/env python3
"""
SQLAlchemy engine factory and Session maker.

- Reads DATABASE_URL from config (env or YAML, 12-factor)
- Provides get_engine(), SessionLocal(), session_scope() and configure_engine()
- Every billing component takes a session factory so tests can bind their own engine.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from subbilling.config import cfg

Base = declarative_base()

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # one shared connection so every session sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def configure_engine(url: Optional[str] = None) -> Engine:
    """(Re)bind the module-level engine and session factory."""
    global _engine, _SessionLocal
    _engine = _make_engine(url or cfg.DATABASE_URL)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        configure_engine()
    return _engine


def SessionLocal() -> Session:
    if _SessionLocal is None:
        configure_engine()
    return _SessionLocal()


def init_db(engine: Optional[Engine] = None) -> None:
    # import models so they register on Base.metadata
    from subbilling import models  # noqa: F401
    Base.metadata.create_all(bind=engine or get_engine())


@contextmanager
def session_scope(session_factory=None) -> Generator[Session, None, None]:
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
