import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from .errors import StorageError
from .logging_config import get_logger

logger = get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError(
        "DATABASE_URL is not configured. Please set a MySQL connection string before starting the server."
    )


def configure_sqlite(engine: Engine) -> Engine:
    """Make SQLite writers queue instead of failing on lock upgrade."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # let SQLAlchemy own BEGIN so we can issue BEGIN IMMEDIATE
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        return configure_sqlite(create_engine(url, connect_args=connect_args, **kwargs))
    return create_engine(url, pool_pre_ping=True, **kwargs)


engine = build_engine(DATABASE_URL, echo=False)


def init_db(bind: Engine = engine) -> None:
    """Create database tables if they do not exist."""
    SQLModel.metadata.create_all(bind)


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """One atomic unit of work: commit on success, roll back on anything else.

    Cancellation (``CancelledError``, ``KeyboardInterrupt``) also rolls back.
    SQLAlchemy failures are re-raised as ``StorageError``.
    """
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        retryable = isinstance(exc, (IntegrityError, OperationalError))
        logger.warning("transaction_rolled_back", error=type(exc).__name__, detail=str(exc), retryable=retryable)
        raise StorageError("Storage operation failed", retryable=retryable, detail=str(exc)) from exc
    except BaseException:
        session.rollback()
        raise


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
