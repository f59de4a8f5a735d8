"""
Outbox transaction wrappers.

Both wrappers expose the same contract: ``begin`` / ``complete`` /
``commit`` / ``rollback`` / ``close`` plus context-manager use that commits
on a clean exit, rolls back on an exception, and always releases the
connection. The outbox persister only ever sees the OutboxTransaction
protocol.
"""

from __future__ import annotations

import logging
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sqlpersist.exceptions import TransactionStateError
from sqlpersist.storage.connection import ConnectionManager, TransactionScope

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Transaction

    from sqlpersist.outbox.concurrency import ConcurrencyControlStrategy
    from sqlpersist.outbox.models import OutboxMessage, StoreResult

logger = logging.getLogger(__name__)


@runtime_checkable
class OutboxTransaction(Protocol):
    """
    Protocol for outbox transactions.

    Example:
        with outbox_persister.begin_transaction(message_id) as transaction:
            # business data written on transaction.connection
            outbox_persister.store(OutboxMessage(message_id, operations), transaction)
        # committed here, or rolled back if the block raised
    """

    @property
    def connection(self) -> Connection: ...

    def begin(self, message_id: str | None = None) -> None:
        """
        Start the transaction.

        Args:
            message_id: Incoming message ID; lets the concurrency strategy
                claim the outbox row up front
        """
        ...

    def complete(self, message: OutboxMessage) -> StoreResult:
        """Persist the message's operations inside this transaction."""
        ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def close(self) -> None:
        """Release resources, rolling back if still active."""
        ...

    def __enter__(self) -> OutboxTransaction: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


class _State(Enum):
    NEW = "new"
    ACTIVE = "active"
    FINISHED = "finished"


class _OutboxTransactionBase:
    """Shared lifecycle; subclasses supply the actual transaction handling."""

    def __init__(
        self, concurrency: ConcurrencyControlStrategy, connection_manager: ConnectionManager
    ):
        self._concurrency = concurrency
        self._connection_manager = connection_manager
        self._state = _State.NEW
        self._message_id: str | None = None
        self._begun: StoreResult | None = None

    @property
    def connection(self) -> Connection:
        raise NotImplementedError

    @property
    def is_active(self) -> bool:
        return self._state is _State.ACTIVE

    def _open(self) -> None:
        raise NotImplementedError

    def _commit(self) -> None:
        raise NotImplementedError

    def _rollback(self) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError

    def _require_active(self, operation: str) -> None:
        if self._state is not _State.ACTIVE:
            raise TransactionStateError(
                f"Cannot {operation} an outbox transaction that is {self._state.value}"
            )

    def begin(self, message_id: str | None = None) -> None:
        if self._state is not _State.NEW:
            raise TransactionStateError("Outbox transaction has already been begun")
        self._open()
        self._state = _State.ACTIVE
        if message_id is None:
            return
        try:
            self._begun = self._concurrency.begin(message_id, self.connection)
        except Exception:
            self.rollback()
            raise
        self._message_id = message_id

    def complete(self, message: OutboxMessage) -> StoreResult:
        self._require_active("complete")
        if self._message_id is not None and message.message_id != self._message_id:
            raise TransactionStateError(
                f"Outbox transaction was begun for {self._message_id!r}, "
                f"not {message.message_id!r}"
            )
        return self._concurrency.complete(message, self.connection, self._begun)

    def commit(self) -> None:
        self._require_active("commit")
        self._state = _State.FINISHED
        try:
            self._commit()
        finally:
            self._release()

    def rollback(self) -> None:
        if self._state is not _State.ACTIVE:
            return
        self._state = _State.FINISHED
        try:
            self._rollback()
        finally:
            self._release()

    def close(self) -> None:
        self.rollback()

    def __enter__(self) -> _OutboxTransactionBase:
        if self._state is _State.NEW:
            self.begin()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self.rollback()
        elif self._state is _State.ACTIVE:
            self.commit()


class ConnectionOutboxTransaction(_OutboxTransactionBase):
    """Outbox transaction owning its connection and database transaction."""

    def __init__(
        self, concurrency: ConcurrencyControlStrategy, connection_manager: ConnectionManager
    ):
        super().__init__(concurrency, connection_manager)
        self._connection: Connection | None = None
        self._transaction: Transaction | None = None

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            raise TransactionStateError("Outbox transaction has not been begun")
        return self._connection

    def _open(self) -> None:
        connection = self._connection_manager.open()
        try:
            self._transaction = connection.begin()
        except Exception:
            connection.close()
            raise
        self._connection = connection
        logger.debug("Began connection-owned outbox transaction")

    def _commit(self) -> None:
        self._transaction.commit()  # type: ignore[union-attr]

    def _rollback(self) -> None:
        logger.debug("Rolling back connection-owned outbox transaction")
        self._transaction.rollback()  # type: ignore[union-attr]

    def _release(self) -> None:
        if self._connection is not None:
            self._connection.close()
        self._connection = None
        self._transaction = None


class TransactionScopeOutboxTransaction(_OutboxTransactionBase):
    """
    Outbox transaction enlisted in the ambient TransactionScope.

    When a scope is already active the outbox work joins it and ``commit``
    only votes; the outermost scope decides. Otherwise this transaction
    opens the ambient scope itself.
    """

    def __init__(
        self, concurrency: ConcurrencyControlStrategy, connection_manager: ConnectionManager
    ):
        super().__init__(concurrency, connection_manager)
        self._scope: TransactionScope | None = None

    @property
    def connection(self) -> Connection:
        if self._scope is None:
            raise TransactionStateError("Outbox transaction has not been begun")
        return self._scope.connection

    def _open(self) -> None:
        scope = TransactionScope(self._connection_manager)
        scope.__enter__()
        self._scope = scope

    def _commit(self) -> None:
        self._scope.complete()  # type: ignore[union-attr]
        self._scope.__exit__(None, None, None)  # type: ignore[union-attr]

    def _rollback(self) -> None:
        # Leaving without complete() dooms the ambient transaction
        self._scope.__exit__(None, None, None)  # type: ignore[union-attr]

    def _release(self) -> None:
        self._scope = None
