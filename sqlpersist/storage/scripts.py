"""
Create/drop scripts for the saga, outbox and subscription tables.

Each builder returns a list of single statements. Every statement is
idempotent for its dialect, so ``install_schema`` can run at every startup.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from sqlalchemy import text

from sqlpersist.commands.outbox import (
    MESSAGE_ID_LENGTH,
    OUTBOX_TABLE,
    OUTBOX_TABLE_ABBREVIATION,
)
from sqlpersist.commands.saga import correlation_column_name
from sqlpersist.commands.subscription import (
    SUBSCRIPTION_TABLE,
    SUBSCRIPTION_TABLE_ABBREVIATION,
)
from sqlpersist.dialects import ColumnDefinition, IndexDefinition, SqlDialect
from sqlpersist.saga.definition import CorrelationPropertyType, SagaDefinition

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)

ADDRESS_LENGTH = 200
VERSION_LENGTH = 23
SAGA_ID_LENGTH = 38
CORRELATION_LENGTH = 200


# ============================================================================
# Outbox
# ============================================================================


def _outbox_names(dialect: SqlDialect, table_prefix: str) -> tuple[str, str]:
    logical = dialect.abbreviate(OUTBOX_TABLE, OUTBOX_TABLE_ABBREVIATION)
    index = table_prefix + logical + dialect.abbreviate("_DispatchedAt", "_DA")
    return logical, index


def build_outbox_create_script(
    dialect: SqlDialect, table_prefix: str, schema: str | None = None
) -> list[str]:
    logical, index_name = _outbox_names(dialect, table_prefix)
    table = dialect.table_name(table_prefix, logical, schema)
    columns = [
        ColumnDefinition("MessageId", dialect.string_type(MESSAGE_ID_LENGTH)),
        ColumnDefinition("Dispatched", dialect.boolean_type, default=dialect.boolean(False)),
        ColumnDefinition("DispatchedAt", dialect.datetime_type, nullable=True),
        ColumnDefinition("PersistenceVersion", dialect.string_type(VERSION_LENGTH)),
        ColumnDefinition("Operations", dialect.json_type),
    ]
    index = IndexDefinition(
        name=index_name,
        columns=("DispatchedAt",),
        where=f"{dialect.quote('Dispatched')} = {dialect.boolean(True)}",
    )
    return dialect.create_table(table, columns, ["MessageId"], [index])


def build_outbox_drop_script(
    dialect: SqlDialect, table_prefix: str, schema: str | None = None
) -> list[str]:
    logical, _ = _outbox_names(dialect, table_prefix)
    return dialect.drop_table(dialect.table_name(table_prefix, logical, schema))


# ============================================================================
# Subscriptions
# ============================================================================


def build_subscription_create_script(
    dialect: SqlDialect, table_prefix: str, schema: str | None = None
) -> list[str]:
    logical = dialect.abbreviate(SUBSCRIPTION_TABLE, SUBSCRIPTION_TABLE_ABBREVIATION)
    table = dialect.table_name(table_prefix, logical, schema)
    columns = [
        ColumnDefinition("Subscriber", dialect.string_type(ADDRESS_LENGTH)),
        ColumnDefinition("MessageType", dialect.string_type(ADDRESS_LENGTH)),
        ColumnDefinition("Endpoint", dialect.string_type(ADDRESS_LENGTH), nullable=True),
        ColumnDefinition("PersistenceVersion", dialect.string_type(VERSION_LENGTH)),
    ]
    index = IndexDefinition(
        name=table_prefix + logical + dialect.abbreviate("_MessageType", "_MT"),
        columns=("MessageType",),
    )
    return dialect.create_table(table, columns, ["Subscriber", "MessageType"], [index])


def build_subscription_drop_script(
    dialect: SqlDialect, table_prefix: str, schema: str | None = None
) -> list[str]:
    logical = dialect.abbreviate(SUBSCRIPTION_TABLE, SUBSCRIPTION_TABLE_ABBREVIATION)
    return dialect.drop_table(dialect.table_name(table_prefix, logical, schema))


# ============================================================================
# Sagas
# ============================================================================


def saga_index_name(dialect: SqlDialect, table_prefix: str, definition: SagaDefinition) -> str:
    """Unquoted name of the unique index on the correlation column."""
    prop = definition.correlation_property
    if prop is None:
        raise ValueError(f"Saga {definition.name!r} has no correlation property")
    return table_prefix + definition.table_suffix + dialect.abbreviate(f"_{prop.name}", "_CI")


def _correlation_type(dialect: SqlDialect, type_: CorrelationPropertyType) -> str:
    if type_ is CorrelationPropertyType.STRING:
        return dialect.string_type(CORRELATION_LENGTH)
    raise ValueError(f"Unsupported correlation property type: {type_}")


def build_saga_create_script(
    definition: SagaDefinition,
    dialect: SqlDialect,
    table_prefix: str,
    schema: str | None = None,
) -> list[str]:
    table = dialect.table_name(table_prefix, definition.table_suffix, schema)
    columns = [
        ColumnDefinition("Id", dialect.string_type(SAGA_ID_LENGTH)),
        ColumnDefinition("Metadata", dialect.json_type),
        ColumnDefinition("Data", dialect.json_type),
        ColumnDefinition("PersistenceVersion", dialect.integer_type),
    ]
    indexes: list[IndexDefinition] = []
    prop = definition.correlation_property
    if prop is not None:
        column = correlation_column_name(prop.name)
        columns.append(
            ColumnDefinition(column, _correlation_type(dialect, prop.type), nullable=True)
        )
        indexes.append(
            IndexDefinition(
                name=saga_index_name(dialect, table_prefix, definition),
                columns=(column,),
                unique=True,
            )
        )
    return dialect.create_table(table, columns, ["Id"], indexes)


def build_saga_drop_script(
    definition: SagaDefinition,
    dialect: SqlDialect,
    table_prefix: str,
    schema: str | None = None,
) -> list[str]:
    return dialect.drop_table(dialect.table_name(table_prefix, definition.table_suffix, schema))


def install_schema(connection: Connection, statements: Sequence[str]) -> None:
    """
    Execute DDL statements in order on ``connection``.

    The caller owns the transaction (``engine.begin()``).
    """
    for statement in statements:
        logger.debug(f"Executing DDL: {statement.splitlines()[0]}")
        connection.execute(text(statement))
