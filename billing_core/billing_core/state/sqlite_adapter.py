"""SQLite adapter for local operation and tests.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend.

Key differences from the PostgreSQL backend:

* No connection pooling (SQLite is single-writer).  In-memory databases
  share one connection so every session sees the same data.
* The ``platform`` / ``app`` schemas are removed with
  ``schema_translate_map``; SQLite has a single namespace.
* ``set_tenant_context()`` is a no-op (no RLS).
* JSONB columns fall back to SQLite's TEXT (JSON stored as strings).

INVARIANT: The same ORM code paths are exercised in local and production
modes.  Only the engine URL, schema names and tenant context differ.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_core.state.tables import PLATFORM_SCHEMA, TENANT_SCHEMA, Base

logger = logging.getLogger(__name__)

SQLITE_SCHEMA_TRANSLATE_MAP: dict[str | None, str | None] = {
    PLATFORM_SCHEMA: None,
    TENANT_SCHEMA: None,
}


def get_local_engine(
    db_path: Path | str = ".tenantdesk/billing.db",
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  Use ``:memory:`` for ephemeral
        in-memory databases (useful for testing).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    in_memory = str(db_path) == ":memory:"
    if in_memory:
        url = "sqlite+aiosqlite:///:memory:"
        engine = create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            execution_options={"schema_translate_map": SQLITE_SCHEMA_TRANSLATE_MAP},
        )
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            execution_options={"schema_translate_map": SQLITE_SCHEMA_TRANSLATE_MAP},
        )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all billing tables in the SQLite database.

    Idempotent and safe to call on every startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
