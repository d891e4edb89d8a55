from typing import Any, Dict
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert


def _normalize_db_url(url: str | None) -> str | None:
    # hosted postgres often hands out "postgres://..." , asyncpg/SQLAlchemy needs "postgresql+asyncpg://..."
    if not url:
        return None
    if url.startswith("postgres://",):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def engine_kwargs(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # in-memory sqlite only exists per connection, keep one connection around
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def dialect_insert(session, table):
    """INSERT supporting on_conflict_do_nothing for both postgres and sqlite sessions."""
    if session.bind.dialect.name == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)
