"""Async SQLAlchemy engine and session factory for the billing store.

Supports both PostgreSQL (production) and SQLite (local dev mode and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` -> connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   -> single-connection SQLite engine

Two kinds of sessions are handed out by the API layer:

* tenant-scoped sessions, which bind ``app.tenant_id`` for row-level
  security through :func:`set_tenant_context`;
* privileged service sessions, which skip that step.  The billing pipeline
  only ever uses these.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Tenant IDs: alphanumeric, hyphens, underscores, 1-128 chars.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from billing_core.state.sqlite_adapter import get_local_engine

        # sqlite+aiosqlite:///path/to/billing.db
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ""
        return get_local_engine(db_path or ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                # Webhook handlers must not sit on row locks; Stripe retries anyway.
                "statement_timeout": "15000",
                "lock_timeout": "5000",
            }
        },
    )
    logger.info("Created billing store engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to *engine*.

    Attributes survive commit so entities read inside one transaction can
    still be inspected after it ends.
    """
    return async_sessionmaker(engine, expire_on_commit=False)


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Bind *tenant_id* for RLS policy evaluation in the current transaction.

    PostgreSQL gets ``set_config('app.tenant_id', ..., true)``, which lasts
    until the transaction ends.  SQLite has no RLS, so this is a no-op there.

    Raises
    ------
    ValueError
        If *tenant_id* is not a valid tenant identifier.
    """
    if session.get_bind().dialect.name == "sqlite":
        return

    if not _TENANT_ID_RE.match(tenant_id):
        raise ValueError(f"Invalid tenant_id: must match {_TENANT_ID_RE.pattern!r}, got {tenant_id!r}")

    await session.execute(
        text("SELECT set_config('app.tenant_id', :tid, true)"),
        {"tid": tenant_id},
    )
