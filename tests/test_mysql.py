"""
Tests running the MySql dialect's SQL against MySQL.

Covers the idioms that differ from PostgreSQL: ``insert ignore``,
``on duplicate key update``, ``delete ... limit``, inline index DDL and
``for update`` row locks.

**IMPORTANT**: These tests require MySQL. They are skipped when neither
SQLPERSIST_TEST_MYSQL_URL nor Docker is available.
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import inspect

from sqlpersist.exceptions import SagaConcurrencyError
from sqlpersist.outbox import OutboxMessage, StoreResult, TransportOperation
from sqlpersist.outbox.concurrency import utc_now
from sqlpersist.saga import SagaData, SagaMetadata
from sqlpersist.storage import install_schema
from sqlpersist.subscription import Subscriber

pytestmark = pytest.mark.mysql

WORKERS = 4
BILLING = Subscriber("billing@host1", "Billing")


class TicketSagaData(SagaData):
    ticket_id: str | None = None
    seats: int = 0


TICKET_SAGA = SagaMetadata("TicketSaga", TicketSagaData, "ticket_id")


def make_message(message_id: str, marker: str = "payload") -> OutboxMessage:
    return OutboxMessage(
        message_id=message_id,
        operations=[TransportOperation(message_id=f"{message_id}-out", body=marker.encode())],
    )


@pytest.fixture(params=["optimistic", "pessimistic"])
def outbox_persistence(request, make_mysql_persistence):
    return make_mysql_persistence(pessimistic=request.param == "pessimistic")


class TestSchema:
    def test_install_is_idempotent(self, make_mysql_persistence):
        persistence = make_mysql_persistence(sagas=[TICKET_SAGA])
        with persistence.connection_manager.begin() as connection:
            install_schema(connection, persistence.create_scripts())

        inspector = inspect(persistence.engine)
        indexes = {index["name"] for index in inspector.get_indexes("Test_TicketSaga")}
        assert "Test_TicketSaga_ticket_id" in indexes
        assert {"Test_OutboxData", "Test_SubscriptionData"} <= set(inspector.get_table_names())


class TestOutbox:
    def test_store_and_duplicate(self, outbox_persistence):
        message_id = str(uuid.uuid4())

        assert outbox_persistence.outbox.store(make_message(message_id)) is StoreResult.INSERTED
        duplicate = outbox_persistence.outbox.store(make_message(message_id, "second"))

        assert duplicate is StoreResult.ALREADY_EXISTS
        record = outbox_persistence.outbox.get(message_id)
        assert record.dispatched is False
        assert record.operations[0].body == b"payload"

    def test_dispatch_once(self, outbox_persistence):
        message_id = str(uuid.uuid4())
        outbox_persistence.outbox.store(make_message(message_id))

        assert outbox_persistence.outbox.set_as_dispatched(message_id) is True
        assert outbox_persistence.outbox.set_as_dispatched(message_id) is False

        record = outbox_persistence.outbox.get(message_id)
        assert record.dispatched is True
        assert record.operations == []

    def test_concurrent_store(self, outbox_persistence):
        message_id = str(uuid.uuid4())
        barrier = threading.Barrier(WORKERS)

        def store(worker: int) -> StoreResult:
            barrier.wait()
            return outbox_persistence.outbox.store(make_message(message_id, f"worker-{worker}"))

        with ThreadPoolExecutor(max_workers=WORKERS) as executor:
            results = list(executor.map(store, range(WORKERS)))

        assert results.count(StoreResult.INSERTED) == 1
        assert results.count(StoreResult.ALREADY_EXISTS) == WORKERS - 1

    def test_cleanup_in_batches(self, make_mysql_persistence):
        persistence = make_mysql_persistence()
        outbox = persistence.outbox
        for i in range(5):
            outbox.store(OutboxMessage(message_id=f"old-{i}"))
            with outbox.begin_transaction() as transaction:
                handle = persistence.concurrency.prepare_dispatch(
                    transaction.connection, f"old-{i}"
                )
                persistence.concurrency.mark_dispatched(
                    transaction.connection, handle, utc_now() - timedelta(days=2)
                )
        outbox.store(OutboxMessage(message_id="pending"))

        removed = outbox.remove_entries_older_than(utc_now() - timedelta(days=1), batch_size=2)

        assert removed == 5
        assert outbox.get("old-0") is None
        assert outbox.get("pending") is not None


class TestSubscriptions:
    def test_subscribe_twice_updates_endpoint(self, make_mysql_persistence):
        subscriptions = make_mysql_persistence().subscriptions
        subscriptions.subscribe(BILLING, "OrderPlaced")
        moved = Subscriber(BILLING.transport_address, "BillingV2")

        subscriptions.subscribe(moved, "OrderPlaced")

        assert subscriptions.get_subscribers(["OrderPlaced"]) == [moved]

    def test_distinct_subscribers(self, make_mysql_persistence):
        subscriptions = make_mysql_persistence().subscriptions
        subscriptions.subscribe(BILLING, "A")
        subscriptions.subscribe(BILLING, "B")

        assert subscriptions.get_subscribers(["A", "B"]) == [BILLING]

        subscriptions.unsubscribe(BILLING, "A")
        assert subscriptions.get_subscribers(["A"]) == []


class TestSagas:
    def test_lifecycle(self, make_mysql_persistence):
        persistence = make_mysql_persistence(sagas=[TICKET_SAGA])
        sagas = persistence.sagas
        data = TicketSagaData(ticket_id="t-1", seats=2)

        with persistence.engine.begin() as connection:
            sagas.save(data, connection)
            data.seats = 3
            data.ticket_id = "t-2"
            assert sagas.update(data, 0, connection) == 1

        with persistence.engine.connect() as connection:
            record = sagas.get_by_property(TicketSagaData, "ticket_id", "t-2", connection)
            assert sagas.get_by_property(TicketSagaData, "ticket_id", "t-1", connection) is None
        assert record.version == 1
        assert record.data.seats == 3

        with persistence.engine.begin() as connection:
            sagas.complete(data, 1, connection)
            assert sagas.get(TicketSagaData, data.id, connection) is None

    def test_duplicate_correlation_value(self, make_mysql_persistence):
        persistence = make_mysql_persistence(sagas=[TICKET_SAGA])
        with persistence.engine.begin() as connection:
            persistence.sagas.save(TicketSagaData(ticket_id="same"), connection)

        with pytest.raises(SagaConcurrencyError):
            with persistence.engine.begin() as connection:
                persistence.sagas.save(TicketSagaData(ticket_id="same"), connection)

    def test_stale_update(self, make_mysql_persistence):
        persistence = make_mysql_persistence(sagas=[TICKET_SAGA])
        data = TicketSagaData(ticket_id="t-9")
        with persistence.engine.begin() as connection:
            persistence.sagas.save(data, connection)
            persistence.sagas.update(data, 0, connection)

        with pytest.raises(SagaConcurrencyError):
            with persistence.engine.begin() as connection:
                persistence.sagas.update(data, 0, connection)
