"""
Outbox persister.

Orchestrates storing pending operations, reading them back for dispatch,
marking them dispatched and cleaning up old dispatched rows. Row-level
semantics are delegated to the concurrency control strategy injected at
construction; the persister does not know which one it has, nor which kind of
transaction the factory produces.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlpersist.outbox.concurrency import ConcurrencyControlStrategy
from sqlpersist.outbox.models import (
    OutboxMessage,
    OutboxRecord,
    StoreResult,
    deserialize_operations,
)
from sqlpersist.outbox.transaction import OutboxTransaction

if TYPE_CHECKING:
    from sqlpersist.commands.outbox import OutboxCommands
    from sqlpersist.storage.connection import ConnectionManager

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_BATCH_SIZE = 10000


class OutboxPersister:
    """
    Outbox storage.

    Args:
        connection_manager: Source of connections for reads
        commands: Outbox commands for the configured dialect
        concurrency: Concurrency control strategy (chosen once at configuration)
        transaction_factory: Creates an un-begun OutboxTransaction
        cleanup_batch_size: Default maximum rows removed per cleanup statement
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        commands: OutboxCommands,
        concurrency: ConcurrencyControlStrategy,
        transaction_factory: Callable[[], OutboxTransaction],
        cleanup_batch_size: int = DEFAULT_CLEANUP_BATCH_SIZE,
    ):
        self._connection_manager = connection_manager
        self._commands = commands
        self._concurrency = concurrency
        self._transaction_factory = transaction_factory
        self._cleanup_batch_size = cleanup_batch_size

    @property
    def concurrency(self) -> ConcurrencyControlStrategy:
        return self._concurrency

    def begin_transaction(self, message_id: str | None = None) -> OutboxTransaction:
        """
        Create and begin an outbox transaction.

        Args:
            message_id: ID of the incoming message being handled; required by
                the pessimistic strategy before ``store``

        Returns:
            Active OutboxTransaction (use as a context manager)
        """
        transaction = self._transaction_factory()
        transaction.begin(message_id)
        return transaction

    def store(
        self, message: OutboxMessage, transaction: OutboxTransaction | None = None
    ) -> StoreResult:
        """
        Store pending operations for a message, marked undispatched.

        A message that is already stored is reported as
        ``StoreResult.ALREADY_EXISTS``; nothing is raised and the existing row
        is left untouched.

        Args:
            message: Message ID and operations
            transaction: Transaction to store within; a new one is begun and
                committed when omitted
        """
        if transaction is not None:
            return transaction.complete(message)

        with self.begin_transaction(message.message_id) as own:
            result = own.complete(message)
        logger.debug(f"Stored outbox message {message.message_id}: {result.value}")
        return result

    def get(self, message_id: str) -> OutboxRecord | None:
        """
        Read a stored message.

        Returns:
            OutboxRecord (possibly dispatched), or None if never stored
        """
        with self._connection_manager.connect() as connection:
            row = self._commands.get.execute(connection, MessageId=message_id).first()
        if row is None:
            return None
        dispatched = bool(row[0])
        return OutboxRecord(
            message_id=message_id,
            dispatched=dispatched,
            operations=[] if dispatched else deserialize_operations(row[1]),
            persistence_version=row[2],
        )

    def set_as_dispatched(self, message_id: str) -> bool:
        """
        Mark a message dispatched.

        Idempotent: marking an already dispatched (or unknown) message is a
        no-op.

        Returns:
            True if this call performed the transition
        """
        with self.begin_transaction() as transaction:
            handle = self._concurrency.prepare_dispatch(transaction.connection, message_id)
            if handle is None:
                logger.debug(f"Outbox message {message_id} not found; nothing to dispatch")
                return False
            if self._concurrency.is_already_dispatched(handle):
                logger.debug(f"Outbox message {message_id} already dispatched")
                return False
            return self._concurrency.mark_dispatched(transaction.connection, handle)

    def remove_entries_older_than(
        self, cutoff: datetime, batch_size: int | None = None
    ) -> int:
        """
        Delete dispatched messages dispatched before ``cutoff``.

        Undispatched messages are never removed. Deletes run in batches, each
        in its own transaction, until a batch comes back short.

        Args:
            cutoff: Aware datetimes are converted to naive UTC
            batch_size: Rows per batch; defaults to the persister setting

        Returns:
            Number of rows removed
        """
        if cutoff.tzinfo is not None:
            cutoff = cutoff.astimezone(UTC).replace(tzinfo=None)
        batch_size = batch_size or self._cleanup_batch_size

        total = 0
        while True:
            with self._connection_manager.begin() as connection:
                result = self._commands.cleanup.execute(
                    connection, DispatchedBefore=cutoff, BatchSize=batch_size
                )
                removed = max(result.rowcount, 0)
            total += removed
            if removed < batch_size:
                break

        if total:
            logger.info(f"Removed {total} dispatched outbox entries older than {cutoff}")
        return total
