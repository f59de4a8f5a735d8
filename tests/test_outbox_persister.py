"""
Tests for the outbox persister with the optimistic strategy.

These run on SQLite; the pessimistic strategy needs row locks and is
covered in test_concurrent_outbox.py.
"""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import text

from sqlpersist.exceptions import TransactionStateError
from sqlpersist.outbox import (
    OptimisticConcurrencyControlStrategy,
    OutboxMessage,
    StoreResult,
    TransportOperation,
)
from sqlpersist.outbox.concurrency import utc_now


def make_message(message_id: str | None = None, count: int = 2) -> OutboxMessage:
    message_id = message_id or str(uuid.uuid4())
    return OutboxMessage(
        message_id=message_id,
        operations=[
            TransportOperation(
                message_id=f"{message_id}-{i}",
                properties={"destination": "billing"},
                headers={"NServiceBus.MessageIntent": "Send"},
                body=f"payload {i}".encode(),
            )
            for i in range(count)
        ],
    )


class TestStore:
    """Storing pending operations."""

    def test_store_and_get(self, persistence):
        message = make_message()

        assert persistence.outbox.store(message) is StoreResult.INSERTED

        record = persistence.outbox.get(message.message_id)
        assert record is not None
        assert record.dispatched is False
        assert record.operations == message.operations
        assert record.operations[0].body == b"payload 0"
        assert record.persistence_version == "1.0.0"

    def test_get_unknown(self, persistence):
        assert persistence.outbox.get("missing") is None

    def test_duplicate_store_is_not_an_error(self, persistence):
        message = make_message()
        persistence.outbox.store(message)

        result = persistence.outbox.store(make_message(message.message_id, count=5))

        assert result is StoreResult.ALREADY_EXISTS
        assert len(persistence.outbox.get(message.message_id).operations) == 2

    def test_empty_operations(self, persistence):
        message = OutboxMessage(message_id="empty")
        persistence.outbox.store(message)
        assert persistence.outbox.get("empty").operations == []

    def test_message_id_too_long(self, persistence):
        message = OutboxMessage(message_id="m" * 201)

        with pytest.raises(ValueError, match="at most 200"):
            persistence.outbox.store(message)

        assert persistence.outbox.get(message.message_id) is None

    def test_message_id_at_limit(self, persistence):
        message = OutboxMessage(message_id="m" * 200)
        assert persistence.outbox.store(message) is StoreResult.INSERTED

    def test_strategy_is_optimistic(self, persistence):
        assert isinstance(persistence.outbox.concurrency, OptimisticConcurrencyControlStrategy)


class TestTransactions:
    """Outbox rows share the transaction of the business data."""

    def test_rollback_discards_store(self, persistence):
        message = make_message()

        with pytest.raises(RuntimeError):
            with persistence.outbox.begin_transaction(message.message_id) as transaction:
                persistence.outbox.store(message, transaction)
                raise RuntimeError("handler failed")

        assert persistence.outbox.get(message.message_id) is None

    def test_commit_keeps_store(self, persistence):
        message = make_message()

        with persistence.outbox.begin_transaction(message.message_id) as transaction:
            assert persistence.outbox.store(message, transaction) is StoreResult.INSERTED

        assert persistence.outbox.get(message.message_id) is not None

    def test_business_data_on_same_connection(self, persistence):
        message = make_message()
        with persistence.engine.begin() as connection:
            connection.execute(text("create table orders (id text)"))

        with persistence.outbox.begin_transaction(message.message_id) as transaction:
            transaction.connection.execute(text("insert into orders (id) values ('o-1')"))
            persistence.outbox.store(message, transaction)
            transaction.rollback()

        assert persistence.outbox.get(message.message_id) is None
        with persistence.engine.connect() as connection:
            assert connection.execute(text("select count(*) from orders")).scalar() == 0

    def test_store_for_other_message_rejected(self, persistence):
        with persistence.outbox.begin_transaction("a") as transaction:
            with pytest.raises(TransactionStateError):
                persistence.outbox.store(make_message("b"), transaction)

    def test_complete_after_commit_rejected(self, persistence):
        transaction = persistence.outbox.begin_transaction("a")
        transaction.commit()
        with pytest.raises(TransactionStateError):
            transaction.complete(make_message("a"))

    def test_begin_twice_rejected(self, persistence):
        transaction = persistence.outbox.begin_transaction("a")
        try:
            with pytest.raises(TransactionStateError):
                transaction.begin("a")
        finally:
            transaction.close()


class TestDispatch:
    def test_set_as_dispatched(self, persistence):
        message = make_message()
        persistence.outbox.store(message)

        assert persistence.outbox.set_as_dispatched(message.message_id) is True

        record = persistence.outbox.get(message.message_id)
        assert record.dispatched is True
        assert record.operations == []

    def test_set_as_dispatched_is_idempotent(self, persistence):
        message = make_message()
        persistence.outbox.store(message)
        persistence.outbox.set_as_dispatched(message.message_id)

        assert persistence.outbox.set_as_dispatched(message.message_id) is False
        assert persistence.outbox.get(message.message_id).dispatched is True

    def test_set_unknown_as_dispatched(self, persistence):
        assert persistence.outbox.set_as_dispatched("missing") is False

    def test_losing_update_returns_false(self, persistence):
        """A stale handle's guarded update affects no rows."""
        message = make_message()
        persistence.outbox.store(message)
        strategy = persistence.outbox.concurrency

        with persistence.engine.begin() as connection:
            stale = strategy.prepare_dispatch(connection, message.message_id)
        persistence.outbox.set_as_dispatched(message.message_id)

        with persistence.engine.begin() as connection:
            assert strategy.mark_dispatched(connection, stale) is False

    def test_store_after_dispatch_is_deduplicated(self, persistence):
        message = make_message()
        persistence.outbox.store(message)
        persistence.outbox.set_as_dispatched(message.message_id)

        assert persistence.outbox.store(message) is StoreResult.ALREADY_EXISTS
        assert persistence.outbox.get(message.message_id).dispatched is True


class TestCleanup:
    def _dispatch_at(self, persistence, message_id, dispatched_at):
        persistence.outbox.store(make_message(message_id))
        with persistence.outbox.begin_transaction() as transaction:
            strategy = persistence.outbox.concurrency
            handle = strategy.prepare_dispatch(transaction.connection, message_id)
            assert strategy.mark_dispatched(transaction.connection, handle, dispatched_at)

    def test_removes_only_old_dispatched(self, persistence):
        now = utc_now()
        self._dispatch_at(persistence, "old", now - timedelta(days=10))
        self._dispatch_at(persistence, "recent", now - timedelta(hours=1))
        persistence.outbox.store(make_message("pending"))

        removed = persistence.outbox.remove_entries_older_than(now - timedelta(days=7))

        assert removed == 1
        assert persistence.outbox.get("old") is None
        assert persistence.outbox.get("recent") is not None
        assert persistence.outbox.get("pending") is not None

    def test_batches(self, persistence):
        old = utc_now() - timedelta(days=30)
        for i in range(5):
            self._dispatch_at(persistence, f"m{i}", old)

        removed = persistence.outbox.remove_entries_older_than(utc_now(), batch_size=2)

        assert removed == 5
        assert all(persistence.outbox.get(f"m{i}") is None for i in range(5))

    def test_aware_cutoff(self, persistence):
        self._dispatch_at(persistence, "old", utc_now() - timedelta(days=2))

        removed = persistence.outbox.remove_entries_older_than(
            datetime.now(UTC) - timedelta(days=1)
        )

        assert removed == 1

    def test_cleaner_run_once(self, make_persistence):
        from sqlpersist.outbox import OutboxCleaner

        persistence = make_persistence()
        self._dispatch_at(persistence, "old", utc_now() - timedelta(days=8))
        cleaner = OutboxCleaner(
            persistence.outbox, keep_for=timedelta(days=7), interval=timedelta(minutes=1)
        )

        assert cleaner.run_once() == 1
        assert cleaner.run_once() == 0
