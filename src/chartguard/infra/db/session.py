from __future__ import annotations

from collections.abc import Callable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

SessionFactory = Callable[[], Session]


def create_engine_for_url(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite gets a single shared connection."""

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, future=True)


def create_sqlalchemy_session_factory(engine: Engine) -> SessionFactory:
    """Build a factory that produces SQLAlchemy sessions bound to ``engine``."""

    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)

    def _factory() -> Session:
        return SessionLocal()

    return _factory
