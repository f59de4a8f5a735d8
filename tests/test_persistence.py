"""
Tests for the SqlPersistence entry point.
"""

import time
from datetime import timedelta
from typing import ClassVar

import pytest
from sqlalchemy import inspect

from sqlpersist import (
    ConfigurationError,
    OutboxMessage,
    OutboxSettings,
    PersistenceConfig,
    SagaData,
    SagaMetadata,
    SqlPersistence,
)
from sqlpersist.dialects import PostgreSql
from sqlpersist.outbox import (
    ConnectionOutboxTransaction,
    OptimisticConcurrencyControlStrategy,
    PessimisticConcurrencyControlStrategy,
)
from sqlpersist.outbox.concurrency import utc_now


class InvoiceSagaData(SagaData):
    invoice_number: str | None = None


def test_requires_engine_or_url():
    with pytest.raises(ConfigurationError):
        SqlPersistence(PersistenceConfig(dialect="PostgreSql"))


def test_db_url(tmp_path):
    persistence = SqlPersistence(
        PersistenceConfig(dialect="PostgreSql", outbox=OutboxSettings(cleanup_interval=None)),
        db_url=f"sqlite:///{tmp_path / 'url.db'}",
    )
    try:
        persistence.initialize()
        assert "OutboxData" in inspect(persistence.engine).get_table_names()
    finally:
        persistence.shutdown()


def test_strategy_chosen_once(make_persistence):
    optimistic = make_persistence()
    pessimistic = make_persistence(pessimistic=True, table_prefix="Other_")

    assert isinstance(optimistic.concurrency, OptimisticConcurrencyControlStrategy)
    assert isinstance(pessimistic.concurrency, PessimisticConcurrencyControlStrategy)

    transaction = optimistic.outbox.begin_transaction()
    try:
        assert isinstance(transaction, ConnectionOutboxTransaction)
    finally:
        transaction.close()


def test_initialize_installs_all_tables(make_persistence):
    persistence = make_persistence(sagas=[SagaMetadata("InvoiceSaga", InvoiceSagaData)])

    tables = set(inspect(persistence.engine).get_table_names())

    assert {"Test_OutboxData", "Test_SubscriptionData", "Test_InvoiceSaga"} <= tables


def test_initialize_twice(make_persistence):
    persistence = make_persistence()
    persistence.initialize()
    persistence.initialize(install=False)


def test_create_scripts_cover_sagas(make_persistence):
    persistence = make_persistence(
        sagas=[SagaMetadata("InvoiceSaga", InvoiceSagaData, "invoice_number")]
    )
    scripts = "\n".join(persistence.create_scripts())

    assert '"Test_InvoiceSaga"' in scripts
    assert '"Correlation_invoice_number"' in scripts


def test_cleaner_runs_in_background(sqlite_engine):
    config = PersistenceConfig(
        dialect="PostgreSql",
        outbox=OutboxSettings(
            keep_deduplication_data_for=timedelta(days=1),
            cleanup_interval=timedelta(milliseconds=50),
        ),
    )
    persistence = SqlPersistence(config, engine=sqlite_engine)
    persistence.initialize()
    try:
        assert persistence.cleaner.running
        persistence.outbox.store(OutboxMessage(message_id="old"))
        with persistence.outbox.begin_transaction() as transaction:
            handle = persistence.concurrency.prepare_dispatch(transaction.connection, "old")
            persistence.concurrency.mark_dispatched(
                transaction.connection, handle, utc_now() - timedelta(days=2)
            )

        deadline = time.monotonic() + 5
        while persistence.outbox.get("old") is not None and time.monotonic() < deadline:
            time.sleep(0.05)

        assert persistence.outbox.get("old") is None
    finally:
        persistence.cleaner.stop()

    assert not persistence.cleaner.running


class RecordingPostgreSql(PostgreSql):
    applied: ClassVar[list[int]] = []

    def apply_command_timeout(self, dbapi_connection, seconds):
        self.applied.append(seconds)


def test_command_timeout_applied_to_new_connections(sqlite_engine):
    RecordingPostgreSql.applied.clear()
    config = PersistenceConfig(
        dialect=RecordingPostgreSql(),
        outbox=OutboxSettings(cleanup_interval=None),
        command_timeout=timedelta(seconds=2.5),
    )
    persistence = SqlPersistence(config, engine=sqlite_engine)

    with persistence.connection_manager.connect():
        pass

    assert RecordingPostgreSql.applied == [3]


def test_no_command_timeout_by_default(sqlite_engine):
    RecordingPostgreSql.applied.clear()
    config = PersistenceConfig(
        dialect=RecordingPostgreSql(), outbox=OutboxSettings(cleanup_interval=None)
    )
    persistence = SqlPersistence(config, engine=sqlite_engine)

    with persistence.connection_manager.connect():
        pass

    assert RecordingPostgreSql.applied == []
