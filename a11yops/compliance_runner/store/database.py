"""Engine, transactions and dialect-aware upserts for the relational store."""

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from a11yops.compliance_runner.errors import (
    ConfigurationError,
    StoreUnavailableError,
    TransactionAbortedError,
)
from a11yops.compliance_runner.store.tables import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSACTION_ABORTED_SQLSTATE = "25P02"


def is_transaction_aborted(error: BaseException) -> bool:
    """Whether a driver error reports an aborted transaction."""
    if not isinstance(error, DBAPIError):
        return False
    orig = error.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code == TRANSACTION_ABORTED_SQLSTATE


class Database:
    """Owns the engine and runs units of work in retryable transactions."""

    def __init__(self, url: str, transaction_retries: int = 3, echo: bool = False):
        """Create the engine.

        Args:
            url: SQLAlchemy database URL
            transaction_retries: Extra attempts for an aborted transaction
            echo: Log emitted SQL

        """
        self.url = url
        self.transaction_retries = transaction_retries
        self.engine = sa.create_engine(url, echo=echo)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        """Name of the engine dialect."""
        return self.engine.dialect.name

    def create_schema(self) -> None:
        """Create all tables that don't exist yet."""
        try:
            Base.metadata.create_all(self.engine)
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(f"Store unavailable: {e}") from e

    def dispose(self) -> None:
        """Close pooled connections."""
        self.engine.dispose()

    def run_in_transaction(self, fn: Callable[[Session], T]) -> T:
        """Run a unit of work in its own transaction.

        A transaction the store reports as aborted is rolled back and the
        whole unit is re-run in a fresh transaction.

        Args:
            fn: Unit of work. Receives the session and must not commit.

        Returns:
            Whatever fn returns

        Raises:
            TransactionAbortedError: If every attempt was aborted
            StoreUnavailableError: If the store can't be reached

        """
        attempts = self.transaction_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._sessions.begin() as session:
                    return fn(session)
            except DBAPIError as e:
                if is_transaction_aborted(e):
                    logger.warning(
                        f"Transaction aborted (attempt {attempt}/{attempts})",
                        extra={"attempt": attempt},
                    )
                    continue
                if isinstance(e, (OperationalError, InterfaceError)):
                    raise StoreUnavailableError(f"Store unavailable: {e}") from e
                raise

        raise TransactionAbortedError(
            f"Transaction aborted after {attempts} attempts"
        )

    async def run_in_transaction_async(self, fn: Callable[[Session], T]) -> T:
        """Run a unit of work in a worker thread; see run_in_transaction."""
        return await asyncio.to_thread(self.run_in_transaction, fn)

    def read(self, fn: Callable[[Session], T]) -> T:
        """Run a read-only unit of work."""
        try:
            with self._sessions() as session:
                return fn(session)
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(f"Store unavailable: {e}") from e

    async def read_async(self, fn: Callable[[Session], T]) -> T:
        """Run a read-only unit of work in a worker thread."""
        return await asyncio.to_thread(self.read, fn)


def _insert_for(session: Session, table: sa.Table) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise ConfigurationError(f"Unsupported database dialect: {dialect}")


def insert_ignore(
    session: Session,
    table: sa.Table,
    values: Mapping[str, Any],
    index_elements: Sequence[str],
) -> bool:
    """Insert a row unless one with the same key exists.

    Returns:
        True if a row was inserted

    """
    stmt = (
        _insert_for(session, table)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(index_elements))
    )
    result = session.execute(stmt)
    return bool(result.rowcount)


def upsert(
    session: Session,
    table: sa.Table,
    values: Mapping[str, Any],
    index_elements: Sequence[str],
) -> None:
    """Insert a row or overwrite the non-key columns of the existing one."""
    insert = _insert_for(session, table).values(**values)
    updates = {
        name: insert.excluded[name] for name in values if name not in index_elements
    }
    stmt = insert.on_conflict_do_update(
        index_elements=list(index_elements), set_=updates
    )
    session.execute(stmt)
