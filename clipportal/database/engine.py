"""
clipportal.database.engine — Database Connection & Async Helper
================================================================

One relational store backs every component.  ``DATABASE_URL`` picks the
backend: a SQLite file by default, PostgreSQL when a ``postgresql://`` URL
is supplied (install the ``postgres`` extra).

FastAPI handlers are ``async``; SQLAlchemy here is synchronous.  Route code
ships store calls to a worker thread with :func:`run_db` so the event loop
never blocks on a query or a bcrypt hash::

    user = await run_db(services.users.get_by_id, user_id)

Every store method opens its own short transaction through
:func:`get_session`; nothing spans two stores.

Usage::

    from clipportal.database.engine import create_db_engine, init_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clipportal.database.models import Base
from clipportal.errors import Internal

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_DATABASE_URL = "sqlite:///data/clipportal.db"


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    SQLite URLs get ``check_same_thread=False`` (requests hop threads via
    :func:`run_db`) and the parent directory of the database file is
    created.  Server databases get a small pool with pre-ping:

    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.
    """
    url = url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
    parsed = make_url(url)

    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            url,
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_timeout=10,
            pool_recycle=3600,
        )
    logger.info(
        "Database engine created → %s (%s)",
        parsed.get_backend_name(), parsed.host or parsed.database,
    )
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`clipportal.database.models`.

    Safe on every startup.  Production deployments manage the schema with
    Alembic (``alembic upgrade head``); ``create_all`` covers dev/test.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that commits on success and rolls back on
    exception.

    Driver and ORM failures are converted to :class:`~clipportal.errors.Internal`
    so storage problems never leak past the store boundary.  Domain errors
    raised inside the block propagate unchanged (after the rollback).
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Storage failure: %s", exc.__class__.__name__)
        raise Internal() from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def read_or_default(default: T, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a read-only store query, returning *default* on storage failure.

    List and search paths use this so a broken table yields "no results"
    instead of an error page.
    """
    try:
        return func(*args, **kwargs)
    except Internal:
        logger.warning("Read path %s degraded to default", getattr(func, "__name__", func))
        return default


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** store call on a background thread.

    Wraps :func:`asyncio.to_thread`, which schedules *func* on the default
    ``ThreadPoolExecutor``.  Exceptions propagate to the awaiting handler.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
