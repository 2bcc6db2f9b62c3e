"""Database engine, session helpers and schema bootstrap."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from portal.config import load_config
from portal.logging import get_logger


class Base(DeclarativeBase):
    pass


metadata = Base.metadata

_engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None

_logger = get_logger(__name__)

T = TypeVar("T")

SessionCallable = Callable[[Session], T]
SessionFactory = Callable[[], AbstractContextManager[Session]]


def _synchronous_url(url: URL) -> URL:
    if url.drivername.lower() in {"sqlite", "sqlite+aiosqlite"}:
        return url.set(drivername="sqlite+pysqlite")
    return url


def _ensure_sqlite_directory(url: URL) -> None:
    database = url.database
    if not url.drivername.startswith("sqlite") or not database or database == ":memory:":
        return
    path = Path(database)
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)


def _build_engine(database_url: str) -> Engine:
    url = _synchronous_url(make_url(database_url))
    connect_args: dict[str, object] = {}
    if url.drivername.startswith("sqlite"):
        _ensure_sqlite_directory(url)
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 15
    return create_engine(url, future=True, connect_args=connect_args)


def _dispose_engine() -> None:
    global _engine, SessionLocal

    if _engine is not None:
        _engine.dispose()
    _engine = None
    SessionLocal = None


def _ensure_engine() -> Engine:
    global _engine, SessionLocal

    database_url = load_config().database.url
    target = _synchronous_url(make_url(database_url)).render_as_string(hide_password=False)
    if _engine is not None and _engine.url.render_as_string(hide_password=False) == target:
        return _engine

    _dispose_engine()
    _engine = _build_engine(database_url)
    SessionLocal = sessionmaker(
        bind=_engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    return _engine


def get_engine() -> Engine:
    return _ensure_engine()


def get_session() -> Session:
    if SessionLocal is None:
        _ensure_engine()
    if SessionLocal is None:
        raise RuntimeError("Database session factory is not initialized.")
    return SessionLocal()


@contextmanager
def session_scope() -> Iterator[Session]:
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> None:
    """Create all tables that do not exist yet."""

    engine = _ensure_engine()

    from portal import models  # noqa: F401

    Base.metadata.create_all(bind=engine, checkfirst=True)
    _logger.info("Database schema ready", extra={"event": "database.bootstrap"})


def reset_engine_for_tests() -> None:
    """Drop the cached engine so the next session picks up a fresh database URL."""

    _dispose_engine()


def _call_with_session(func: SessionCallable[T], *, factory: SessionFactory | None = None) -> T:
    context = factory() if factory is not None else session_scope()
    with context as session:
        return func(session)


async def run_session(func: SessionCallable[T], *, factory: SessionFactory | None = None) -> T:
    """Execute ``func`` with a database session in a worker thread."""

    return await asyncio.to_thread(_call_with_session, func, factory=factory)


__all__ = [
    "Base",
    "SessionFactory",
    "get_engine",
    "get_session",
    "init_db",
    "metadata",
    "reset_engine_for_tests",
    "run_session",
    "session_scope",
]
