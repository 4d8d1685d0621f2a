"""Database bootstrap helpers shared by the API and operator scripts."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from heliumtools.common.config import settings


def _engine_kwargs(dsn: str) -> dict:
    # In-memory SQLite needs a single shared connection to keep its schema.
    if dsn.startswith("sqlite") and ":memory:" in dsn:
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    if dsn.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


# Single SQLAlchemy engine per process.
engine = create_engine(settings.database_dsn, **_engine_kwargs(settings.database_dsn))
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
