"""
Engine and session management for the job runner and the CLI.

One process-wide engine is created by ``init_engine_from_url``; everything
else (``get_session``, ``session_scope``, ``create_tables``) uses it.  The
engine speaks PostgreSQL through psycopg2 in production.  SQLite URLs are
accepted for local runs and get SAVEPOINT support installed, since the
batch runner wraps each item in ``session.begin_nested()``.

``session_scope`` is the outer commit-or-rollback boundary for scripts.
Inside a job run the runner commits per batch; services only flush.
"""

import atexit
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from mealbox_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_NOT_INITIALIZED = "database engine is not initialized; call init_engine_from_url() first"

_state: dict[str, object] = {"engine": None, "factory": None}


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_pre_ping: bool = True,
    pool_recycle: int = 1800,
) -> Engine:
    """Create the process engine and its session factory.

    Pool options apply to server databases only.  Calling this again
    replaces the previous engine after disposing it.
    """
    reset_engine()

    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        engine = create_engine(database_url, echo=echo)
        install_sqlite_savepoint_support(engine)
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    _state["engine"] = engine
    _state["factory"] = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={
        "dialect": engine.dialect.name,
        "echo": echo,
        "pooled": not is_sqlite,
    })
    return engine


def install_sqlite_savepoint_support(engine: Engine) -> None:
    """Make pysqlite emit BEGIN itself so nested transactions behave.

    Without this the driver opens transactions lazily and SAVEPOINTs issued
    by ``begin_nested()`` are not honoured.
    """

    @event.listens_for(engine, "connect")
    def _autocommit_driver(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_engine() -> Engine:
    engine = _state["engine"]
    if engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return engine  # type: ignore[return-value]


def get_session_factory() -> sessionmaker[Session]:
    factory = _state["factory"]
    if factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return factory  # type: ignore[return-value]


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Yield a session; commit on success, roll back and re-raise on error.

    Usage::

        with session_scope() as session:
            JobOrchestrator.from_session(session).run(JobType.CREDIT_EXPIRY)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from mealbox_kernel.db.base import Base
    from mealbox_modules._orm_registry import import_all_orm_models

    import_all_orm_models()
    return Base.metadata


def create_tables() -> None:
    """Create every mealbox table on the initialized engine."""
    _metadata().create_all(get_engine())


def drop_tables() -> None:
    """Drop every mealbox table.  Tests and local resets only."""
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine, if any, and forget the session factory."""
    engine = _state["engine"]
    if engine is not None:
        engine.dispose()  # type: ignore[attr-defined]
    _state["engine"] = None
    _state["factory"] = None


atexit.register(reset_engine)
