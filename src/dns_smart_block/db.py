"""
Database access helpers.

Builds the SQLAlchemy engine and session factory shared by every process,
creates the schema, and hides the one dialect difference the pipeline cares
about: ``INSERT ... ON CONFLICT`` is spelled through the PostgreSQL or SQLite
specific ``insert`` construct.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base


def create_db_engine(url: str, statement_timeout_ms: int | None = None) -> Engine:
    """
    Create an engine for ``url``.

    In-memory SQLite URLs share a single connection so that every session sees
    the same database; foreign keys are switched on for SQLite connections.
    PostgreSQL connections get ``statement_timeout`` so that a stuck query
    cannot hold a message forever.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if parsed.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    connect_args = {}
    if statement_timeout_ms and parsed.get_backend_name() == "postgresql":
        connect_args["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(engine)


def dialect_insert(session: Session, table):
    """Return an ``insert`` for ``table`` that supports ``on_conflict_do_nothing``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")
