"""
Pytest configuration and fixtures for sqlpersist tests.

SQLite runs the PostgreSql dialect's SQL (quoting, ``on conflict``, ``limit``
and boolean literals are all accepted by SQLite 3.24+). Anything that needs
row locks runs against PostgreSQL, from SQLPERSIST_TEST_POSTGRES_URL or a
Testcontainers instance. The MySql dialect's SQL runs against MySQL, from
SQLPERSIST_TEST_MYSQL_URL or a Testcontainers instance. Server-backed tests
are skipped when neither the URL nor Docker is available.
"""

import os
from collections.abc import Iterable

import pytest
from sqlalchemy import create_engine

from sqlpersist.config import OutboxSettings, PersistenceConfig
from sqlpersist.persistence import SqlPersistence
from sqlpersist.saga.data import SagaMetadata


def build_persistence(
    engine,
    dialect: str = "PostgreSql",
    pessimistic: bool = False,
    transaction_scope: bool = False,
    sagas: Iterable[SagaMetadata] = (),
    table_prefix: str = "Test_",
    **config_kwargs,
) -> SqlPersistence:
    """Create and initialize persistence with the cleaner disabled."""
    config = PersistenceConfig(
        dialect=dialect,
        table_prefix=table_prefix,
        outbox=OutboxSettings(
            pessimistic=pessimistic,
            transaction_scope=transaction_scope,
            cleanup_interval=None,
        ),
        **config_kwargs,
    )
    persistence = SqlPersistence(config, engine=engine, sagas=sagas)
    persistence.initialize()
    return persistence


@pytest.fixture
def sqlite_engine(tmp_path):
    """File-backed SQLite engine, so separate connections share one database."""
    engine = create_engine(f"sqlite:///{tmp_path / 'sqlpersist.db'}", echo=False)
    yield engine
    engine.dispose()


@pytest.fixture
def make_persistence(sqlite_engine):
    """Factory for SQLite-backed persistence."""

    def factory(**kwargs) -> SqlPersistence:
        return build_persistence(sqlite_engine, **kwargs)

    return factory


@pytest.fixture
def persistence(make_persistence):
    """Optimistic, connection-owned persistence on SQLite."""
    return make_persistence()


@pytest.fixture(scope="session")
def postgres_url():
    """
    PostgreSQL connection URL.

    Uses SQLPERSIST_TEST_POSTGRES_URL when set, otherwise starts a
    Testcontainers PostgreSQL instance for the session.
    """
    url = os.getenv("SQLPERSIST_TEST_POSTGRES_URL")
    if url:
        yield url
        return

    try:
        import psycopg  # noqa: F401
    except ModuleNotFoundError:
        pytest.skip("psycopg not installed")

    try:
        from testcontainers.postgres import PostgresContainer
    except ModuleNotFoundError:
        pytest.skip("testcontainers not installed")

    container = PostgresContainer(
        "postgres:17",
        username="sqlpersist",
        password="sqlpersist_test_password",
        dbname="sqlpersist_test",
        driver="psycopg",
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable: {e}")
    try:
        yield container.get_connection_url()
    finally:
        container.stop()


@pytest.fixture
def postgres_engine(postgres_url):
    # READ COMMITTED so that a blocked insert sees the winner's commit
    engine = create_engine(postgres_url, echo=False, isolation_level="READ COMMITTED")
    yield engine
    engine.dispose()


def drop_tables(engine, created: Iterable[SqlPersistence]) -> None:
    """Drop every table the given persistence instances installed."""
    from sqlpersist.storage.scripts import (
        build_outbox_drop_script,
        build_saga_drop_script,
        build_subscription_drop_script,
        install_schema,
    )

    for persistence in created:
        config = persistence.config
        dialect = config.sql_dialect
        statements = build_outbox_drop_script(dialect, config.table_prefix, config.schema)
        statements += build_subscription_drop_script(dialect, config.table_prefix, config.schema)
        for info in persistence.saga_info_cache:
            statements += build_saga_drop_script(
                info.definition, dialect, config.table_prefix, config.schema
            )
        with engine.begin() as connection:
            install_schema(connection, statements)


@pytest.fixture
def make_postgres_persistence(postgres_engine):
    """Factory for PostgreSQL-backed persistence; drops its tables afterwards."""
    created: list[SqlPersistence] = []

    def factory(**kwargs) -> SqlPersistence:
        persistence = build_persistence(postgres_engine, **kwargs)
        created.append(persistence)
        return persistence

    yield factory
    drop_tables(postgres_engine, created)


@pytest.fixture(scope="session")
def mysql_url():
    """
    MySQL connection URL.

    Uses SQLPERSIST_TEST_MYSQL_URL when set, otherwise starts a
    Testcontainers MySQL instance for the session.
    """
    url = os.getenv("SQLPERSIST_TEST_MYSQL_URL")
    if url:
        yield url
        return

    try:
        import pymysql  # noqa: F401
    except ModuleNotFoundError:
        pytest.skip("pymysql not installed")

    try:
        from testcontainers.mysql import MySqlContainer
    except ModuleNotFoundError:
        pytest.skip("testcontainers not installed")

    container = MySqlContainer(
        "mysql:9",
        username="sqlpersist",
        password="sqlpersist_test_password",
        dbname="sqlpersist_test",
    )
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"MySQL container unavailable: {e}")
    try:
        yield container.get_connection_url().replace("mysql://", "mysql+pymysql://")
    finally:
        container.stop()


@pytest.fixture
def mysql_engine(mysql_url):
    # READ COMMITTED so that a blocked insert sees the winner's commit
    engine = create_engine(mysql_url, echo=False, isolation_level="READ COMMITTED")
    yield engine
    engine.dispose()


@pytest.fixture
def make_mysql_persistence(mysql_engine):
    """Factory for MySQL-backed persistence; drops its tables afterwards."""
    created: list[SqlPersistence] = []

    def factory(**kwargs) -> SqlPersistence:
        persistence = build_persistence(mysql_engine, dialect="MySql", **kwargs)
        created.append(persistence)
        return persistence

    yield factory
    drop_tables(mysql_engine, created)
