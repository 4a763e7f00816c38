"""
Module: caisse_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and the transactional unit of work.  Single point of database connection
    configuration for the whole system.
Architecture position: Kernel > DB.  May import from db/base.py and
    db/immutability.py.  MUST NOT import from services/ or selectors/.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) where a declaration is mutated.
    - SQLite (development and tests) opens every transaction with
      BEGIN IMMEDIATE, so writers are serialized and a read-then-write
      sequence inside one transaction cannot interleave with another.
    - session_scope() commits on success and rolls back fully on every
      failure path.  Driver-level failures surface as PersistenceError.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory called
      before init_engine_from_url().
    - PersistenceError(retryable=True) on statement/lock timeout, busy
      database, or any other SQLAlchemyError inside session_scope().
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from caisse_kernel.exceptions import CaisseKernelError, PersistenceError
from caisse_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

# Module-level engine and session factory
_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_writer_lock(engine: Engine) -> None:
    """Take over transaction control from pysqlite and begin IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit BEGIN so the "begin" hook owns it.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    busy_timeout: float = 30.0,
) -> Engine:
    """
    Initialize the SQLAlchemy engine from a database URL.

    PostgreSQL gets a QueuePool at READ COMMITTED.  SQLite gets the
    BEGIN IMMEDIATE writer lock and ``busy_timeout`` seconds of driver-level
    waiting before a locked database raises.

    A second call overwrites the first.  Immutability listeners are
    registered on every call (idempotent).
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    dialect = url.get_backend_name()

    if dialect == "sqlite":
        _engine = create_engine(
            url,
            echo=echo,
            connect_args={"timeout": busy_timeout, "check_same_thread": False},
        )
        _install_sqlite_writer_lock(_engine)
    else:
        _engine = create_engine(
            url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    from caisse_kernel.db.immutability import register_immutability_listeners

    register_immutability_listeners()

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": dialect,
            "pool_size": pool_size if dialect != "sqlite" else None,
            "echo": echo,
        },
    )

    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """
    Get a new session instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory.

    Useful for multi-threaded scenarios where each thread needs its own session.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


def is_postgres() -> bool:
    """Check if the current engine is PostgreSQL."""
    if _engine is None:
        return False
    return _engine.dialect.name == "postgresql"


def _apply_timeouts(session: Session, timeout_seconds: float) -> None:
    """Bound statement and lock waits for the current PostgreSQL transaction."""
    millis = max(1, int(timeout_seconds * 1000))
    session.execute(text(f"SET LOCAL statement_timeout = {millis}"))
    session.execute(text(f"SET LOCAL lock_timeout = {millis}"))


@contextmanager
def session_scope(
    operation: str = "transaction",
    timeout_seconds: float | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    On normal exit the session is committed and closed.  On any exception the
    session is rolled back and closed:

    - kernel errors (validation, access, transition, ...) are re-raised as-is;
    - SQLAlchemy errors become ``PersistenceError(retryable=True)``;
    - anything else is re-raised after the rollback.

    Usage:
        with session_scope("create_declaration", timeout_seconds=5) as session:
            service = DeclarationLifecycleService(session, ...)
            result = service.create_declaration(...)
    """
    session = get_session()
    logger.debug("transaction_started", extra={"operation": operation})
    try:
        if timeout_seconds and is_postgres():
            _apply_timeouts(session, timeout_seconds)
        yield session
        session.commit()
        logger.debug("transaction_committed", extra={"operation": operation})
    except CaisseKernelError as exc:
        session.rollback()
        logger.info(
            "transaction_rolled_back",
            extra={"operation": operation, "reason": exc.code},
        )
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning(
            "transaction_rolled_back",
            extra={"operation": operation, "reason": type(exc).__name__},
            exc_info=True,
        )
        raise PersistenceError(
            operation=operation,
            reason=str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc),
            retryable=True,
        ) from exc
    except Exception:
        session.rollback()
        logger.warning(
            "transaction_rolled_back",
            extra={"operation": operation, "reason": "unexpected"},
            exc_info=True,
        )
        raise
    finally:
        session.close()


def create_tables() -> None:
    """
    Create all tables defined in the models.

    Importing ``caisse_kernel.models`` registers every table on
    ``Base.metadata`` before ``create_all`` runs.
    """
    from caisse_kernel.db.base import Base
    import caisse_kernel.models  # noqa: F401

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop all tables. Use with caution - primarily for testing."""
    from caisse_kernel.db.base import Base
    import caisse_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory. Useful for test cleanup."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release all pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
