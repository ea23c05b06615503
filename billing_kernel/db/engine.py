"""
Module: billing_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/ or selectors/ (create_tables imports models so
    that Base.metadata knows every table).

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row locks
      (SELECT ... FOR UPDATE) taken by the allocation and balance services.
    - SQLite (tests, local tooling) uses a single shared connection for
      in-memory databases so every session sees the same data.
    - session_scope()/transaction_scope() are all-or-nothing: commit on
      normal exit, rollback and re-raise on any exception.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory are called
      before init_engine_from_url().

Audit relevance:
    Every allocation, reversal and assignment flows through one of the scopes
    below, so no partial allocation is ever committed.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from billing_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Preconditions: database_url is a SQLAlchemy URL for PostgreSQL or SQLite.
    Postconditions: get_engine()/get_session() use this engine.  A second
        call replaces the first.

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    dialect = url.get_backend_name()

    if dialect == "sqlite":
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(database_url, echo=echo, **kwargs)
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            isolation_level="READ COMMITTED",
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": dialect, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    """
    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """
    Raises:
        RuntimeError: If engine has not been initialized.
    """
    return get_session_factory()()


def get_session_factory() -> sessionmaker[Session]:
    """
    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def transaction_scope(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Transactional scope over a session from the given (or global) factory.

    Postconditions: On normal exit the session is committed and closed.
        On exception it is rolled back and closed, and the exception is
        re-raised to the caller unchanged.

    Usage:
        with transaction_scope(factory) as session:
            PaymentAllocationService(session, clock).allocate(...)
    """
    factory = session_factory or get_session_factory()
    session = factory()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """transaction_scope() over the module-level session factory."""
    with transaction_scope() as session:
        yield session


def create_tables() -> None:
    """
    Create all billing tables.

    Preconditions: Engine initialized via init_engine_from_url().
    """
    from billing_kernel.db.base import Base
    import billing_kernel.models  # noqa: F401

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop all tables. Primarily for testing."""
    from billing_kernel.db.base import Base
    import billing_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None
    _SessionFactory = None


def is_postgres() -> bool:
    return _engine is not None and _engine.dialect.name == "postgresql"
