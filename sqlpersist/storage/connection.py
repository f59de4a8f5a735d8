"""
Connection and transaction management.

ConnectionManager hands out SQLAlchemy connections, one per unit of work.
TransactionScope provides an ambient transaction: the outermost scope owns
the connection and the transaction, nested scopes enlist in it, and the
outcome is decided when the outermost scope exits.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import timedelta
from types import TracebackType
from typing import TYPE_CHECKING, Any

from sqlalchemy import event

from sqlpersist.exceptions import TransactionStateError

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine, Transaction

    from sqlpersist.dialects import SqlDialect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Supplies connections for units of work.

    Args:
        engine: SQLAlchemy Engine (pooled); connections are returned to the pool
            when the unit of work ends
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def open(self) -> Connection:
        """Open a connection the caller must close."""
        return self.engine.connect()

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Connection without an explicit transaction, closed on exit."""
        with self.engine.connect() as connection:
            yield connection

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Connection with a transaction committed on success, rolled back on error."""
        with self.engine.begin() as connection:
            yield connection


def set_command_timeout(engine: Engine, dialect: SqlDialect, timeout: timedelta) -> None:
    """
    Apply a command timeout to every connection the engine opens from now on.

    Connections already in the pool keep their settings, so call this before
    the engine is first used. Fractions of a second round up.
    """
    seconds = max(1, math.ceil(timeout.total_seconds()))

    @event.listens_for(engine, "connect")
    def _apply_timeout(dbapi_connection: Any, _connection_record: Any) -> None:
        dialect.apply_command_timeout(dbapi_connection, seconds)

    logger.debug(f"Command timeout of {seconds}s set for {dialect.name} connections")


@dataclass
class _AmbientTransaction:
    """State shared by every scope taking part in one ambient transaction."""

    connection: Connection
    transaction: Transaction
    depth: int = 0
    doomed: bool = False
    scopes: list[TransactionScope] = field(default_factory=list)


# Context variable for the ambient transaction (thread- and task-local)
_ambient: ContextVar[_AmbientTransaction | None] = ContextVar("_ambient", default=None)


class TransactionScope:
    """
    Ambient transaction scope.

    The first scope entered in a context opens a connection and begins a
    transaction; scopes entered inside it reuse both. Every scope must call
    ``complete()`` before it exits for the transaction to commit: a scope
    that exits without completing, or with an exception, dooms the ambient
    transaction, and the outermost scope then rolls it back. The connection
    is always released when the outermost scope exits.

    Example:
        with TransactionScope(connection_manager) as scope:
            outbox_persister.store(message)   # enlists in the scope
            scope.complete()
    """

    def __init__(self, connection_manager: ConnectionManager):
        self._connection_manager = connection_manager
        self._ambient: _AmbientTransaction | None = None
        self._token: Token[_AmbientTransaction | None] | None = None
        self._completed = False

    @staticmethod
    def current() -> TransactionScope | None:
        """Return the innermost active scope in this context, if any."""
        ambient = _ambient.get()
        if ambient is None or not ambient.scopes:
            return None
        return ambient.scopes[-1]

    @property
    def connection(self) -> Connection:
        if self._ambient is None:
            raise TransactionStateError("TransactionScope has not been entered")
        return self._ambient.connection

    @property
    def is_root(self) -> bool:
        return self._token is not None

    def complete(self) -> None:
        """Vote to commit the ambient transaction."""
        if self._ambient is None:
            raise TransactionStateError("TransactionScope has not been entered")
        self._completed = True

    def __enter__(self) -> TransactionScope:
        if self._ambient is not None:
            raise TransactionStateError("TransactionScope cannot be entered twice")

        ambient = _ambient.get()
        if ambient is None:
            connection = self._connection_manager.open()
            try:
                transaction = connection.begin()
            except Exception:
                connection.close()
                raise
            ambient = _AmbientTransaction(connection=connection, transaction=transaction)
            self._token = _ambient.set(ambient)
            logger.debug("Beginning ambient transaction")
        else:
            logger.debug(f"Enlisting in ambient transaction at depth={ambient.depth + 1}")

        ambient.depth += 1
        ambient.scopes.append(self)
        self._ambient = ambient
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        ambient = self._ambient
        if ambient is None:
            return

        if exc_type is not None or not self._completed:
            ambient.doomed = True

        ambient.scopes.remove(self)
        ambient.depth -= 1
        if not self.is_root:
            return

        try:
            if ambient.doomed:
                logger.debug("Rolling back ambient transaction")
                ambient.transaction.rollback()
            else:
                logger.debug("Committing ambient transaction")
                ambient.transaction.commit()
        finally:
            ambient.connection.close()
            _ambient.reset(self._token)  # type: ignore[arg-type]
            self._token = None
