"""
Outbox concurrency control strategies.

A strategy decides how the outbox table is written and read so that a
message's operations are stored once and dispatched at most once, using
nothing but ordinary SQL transactions:

- OptimisticConcurrencyControlStrategy: no locks. Stores use
  insert-if-absent, dispatch uses an update guarded by ``Dispatched = false``
  and the PersistenceVersion read beforehand. The first committer wins; a
  loser sees zero affected rows and treats its attempt as redundant.
- PessimisticConcurrencyControlStrategy: locks. A placeholder row is inserted
  when the transaction begins, so concurrent handlers of the same message
  serialize on its key, and dispatch takes a row lock before reading the
  Dispatched flag.

Both strategies share one OutboxCommands set; swapping strategies never
touches the builders. Strategies are stateless and safe to share.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from sqlpersist.commands.outbox import MESSAGE_ID_LENGTH
from sqlpersist.config import PERSISTENCE_VERSION
from sqlpersist.exceptions import TransactionStateError
from sqlpersist.outbox.models import OutboxMessage, StoreResult, serialize_operations

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

    from sqlpersist.commands.base import CommandTemplate
    from sqlpersist.commands.outbox import OutboxCommands

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Naive UTC timestamp, the form stored in DispatchedAt."""
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class DispatchHandle:
    """
    What a strategy read about a row before marking it dispatched.

    Attributes:
        message_id: Outbox message ID
        dispatched: Dispatched flag as read
        persistence_version: PersistenceVersion as read (the optimistic guard)
        locked: Whether the row is locked until the transaction ends
    """

    message_id: str
    dispatched: bool
    persistence_version: str
    locked: bool


class ConcurrencyControlStrategy(ABC):
    """
    Base class for outbox concurrency control strategies.

    Args:
        commands: Outbox commands built for the configured dialect
        persistence_version: Version tag written with new rows
    """

    def __init__(self, commands: OutboxCommands, persistence_version: str = PERSISTENCE_VERSION):
        self.commands = commands
        self.persistence_version = persistence_version

    @abstractmethod
    def begin(self, message_id: str, connection: Connection) -> StoreResult | None:
        """
        Called once the transaction for an incoming message has started.

        Returns:
            StoreResult when the strategy claims the row up front, else None
        """
        ...

    @abstractmethod
    def complete(
        self, message: OutboxMessage, connection: Connection, begun: StoreResult | None
    ) -> StoreResult:
        """Persist the message's operations within the current transaction."""
        ...

    @abstractmethod
    def prepare_dispatch(self, connection: Connection, message_id: str) -> DispatchHandle | None:
        """
        Read the row about to be marked dispatched.

        Returns:
            DispatchHandle, or None if no row exists for ``message_id``
        """
        ...

    def is_already_dispatched(self, handle: DispatchHandle) -> bool:
        return handle.dispatched

    @abstractmethod
    def mark_dispatched(
        self, connection: Connection, handle: DispatchHandle, dispatched_at: datetime | None = None
    ) -> bool:
        """
        Mark the row dispatched.

        Returns:
            True if this call performed the transition, False if another
            transaction already did
        """
        ...

    def _insert_if_absent(
        self, command: CommandTemplate, connection: Connection, **values: Any
    ) -> StoreResult:
        message_id = values["MessageId"]
        if len(message_id) > MESSAGE_ID_LENGTH:
            # MySQL's insert ignore would truncate it into another message's key
            raise ValueError(
                f"Outbox message ID is {len(message_id)} characters long; "
                f"at most {MESSAGE_ID_LENGTH} are supported"
            )
        try:
            result = command.execute(connection, **values)
        except IntegrityError as e:
            if not command.dialect.is_duplicate_key(e):
                raise
            return StoreResult.ALREADY_EXISTS
        if result.rowcount == 0:
            return StoreResult.ALREADY_EXISTS
        return StoreResult.INSERTED

    def _read(self, connection: Connection, message_id: str, locked: bool) -> DispatchHandle | None:
        command = self.commands.lock_for_dispatch if locked else self.commands.read_for_dispatch
        row = command.execute(connection, MessageId=message_id).first()
        if row is None:
            return None
        return DispatchHandle(
            message_id=message_id,
            dispatched=bool(row[0]),
            persistence_version=row[1],
            locked=locked,
        )


class OptimisticConcurrencyControlStrategy(ConcurrencyControlStrategy):
    """Version-checked dispatch without locks."""

    def begin(self, message_id: str, connection: Connection) -> StoreResult | None:
        return None

    def complete(
        self, message: OutboxMessage, connection: Connection, begun: StoreResult | None
    ) -> StoreResult:
        result = self._insert_if_absent(
            self.commands.optimistic_store,
            connection,
            MessageId=message.message_id,
            Operations=serialize_operations(message.operations),
            PersistenceVersion=self.persistence_version,
        )
        if result is StoreResult.ALREADY_EXISTS:
            logger.debug(f"Outbox message {message.message_id} already stored")
        return result

    def prepare_dispatch(self, connection: Connection, message_id: str) -> DispatchHandle | None:
        return self._read(connection, message_id, locked=False)

    def mark_dispatched(
        self, connection: Connection, handle: DispatchHandle, dispatched_at: datetime | None = None
    ) -> bool:
        result = self.commands.set_as_dispatched_if_unchanged.execute(
            connection,
            DispatchedAt=dispatched_at or utc_now(),
            MessageId=handle.message_id,
            PersistenceVersion=handle.persistence_version,
        )
        if result.rowcount == 0:
            logger.warning(
                f"Outbox message {handle.message_id} was dispatched concurrently; "
                f"skipping redundant dispatch"
            )
            return False
        return True


class PessimisticConcurrencyControlStrategy(ConcurrencyControlStrategy):
    """Lock-based store and dispatch."""

    def begin(self, message_id: str, connection: Connection) -> StoreResult | None:
        # Blocks on the key while another transaction holds an uncommitted placeholder
        result = self._insert_if_absent(
            self.commands.pessimistic_begin,
            connection,
            MessageId=message_id,
            Operations="[]",
            PersistenceVersion=self.persistence_version,
        )
        if result is StoreResult.ALREADY_EXISTS:
            logger.debug(f"Outbox message {message_id} already claimed")
        return result

    def complete(
        self, message: OutboxMessage, connection: Connection, begun: StoreResult | None
    ) -> StoreResult:
        if begun is None:
            raise TransactionStateError(
                "Pessimistic outbox transactions must be begun with the message ID before storing"
            )
        if begun is StoreResult.ALREADY_EXISTS:
            # The row belongs to an earlier transaction; never overwrite it
            return StoreResult.ALREADY_EXISTS
        self.commands.pessimistic_complete.execute(
            connection,
            Operations=serialize_operations(message.operations),
            MessageId=message.message_id,
        )
        return StoreResult.INSERTED

    def prepare_dispatch(self, connection: Connection, message_id: str) -> DispatchHandle | None:
        return self._read(connection, message_id, locked=True)

    def mark_dispatched(
        self, connection: Connection, handle: DispatchHandle, dispatched_at: datetime | None = None
    ) -> bool:
        if not handle.locked:
            raise TransactionStateError("Pessimistic dispatch requires a locked row")
        result = self.commands.set_as_dispatched.execute(
            connection,
            DispatchedAt=dispatched_at or utc_now(),
            MessageId=handle.message_id,
        )
        return result.rowcount > 0
