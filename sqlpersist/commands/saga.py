"""
Saga command builder.

Every write is guarded by the saga's PersistenceVersion column, which the
persister uses as its optimistic concurrency token.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlpersist.commands.base import CommandTemplate
from sqlpersist.dialects import SqlDialect

SAGA_COLUMNS = ("Id", "Metadata", "Data", "PersistenceVersion")


@dataclass(frozen=True)
class SagaCommands:
    """
    Commands for one saga table.

    Attributes:
        table_name: Quoted saga table name
        select_from: ``select <columns> from <table>`` prefix for custom finders
        insert: Insert a new saga row at version 0
        update: Overwrite Data (and the correlation column) and bump the version,
            guarded by Id and version
        get_by_id: Read one saga by Id
        get_by_correlation: Read one saga by correlation value, None without
            a correlation property
        complete: Delete a saga, guarded by Id and version
    """

    table_name: str
    select_from: str
    insert: CommandTemplate
    update: CommandTemplate
    get_by_id: CommandTemplate
    get_by_correlation: CommandTemplate | None
    complete: CommandTemplate


def correlation_column_name(property_name: str) -> str:
    return f"Correlation_{property_name}"


def build_saga_commands(
    dialect: SqlDialect, table_name: str, correlation_column: str | None = None
) -> SagaCommands:
    """
    Build the commands for a saga table.

    Args:
        dialect: Target SQL dialect
        table_name: Already quoted saga table name
        correlation_column: Unquoted correlation column name, if the saga has one
    """
    q = dialect.quote
    p = dialect.parameter
    select_from = f"select {dialect.columns(SAGA_COLUMNS)}\nfrom {table_name}"

    insert_columns = list(SAGA_COLUMNS)
    insert_values = [p(name) for name in SAGA_COLUMNS]
    insert_parameters = list(SAGA_COLUMNS)
    if correlation_column:
        insert_columns.append(correlation_column)
        insert_values.append(p("CorrelationId"))
        insert_parameters.append("CorrelationId")

    insert = CommandTemplate(
        text=(
            f"insert into {table_name}\n"
            f"    ({dialect.columns(insert_columns)})\n"
            f"values\n"
            f"    ({', '.join(insert_values)})"
        ),
        parameters=tuple(insert_parameters),
        dialect=dialect,
    )

    version = q("PersistenceVersion")
    guard = f"{q('Id')} = {p('Id')}\n  and {version} = {p('ExpectedVersion')}"

    assignments = [f"{q('Data')} = {p('Data')}", f"{q('Metadata')} = {p('Metadata')}"]
    update_parameters = ["Data", "Metadata"]
    if correlation_column:
        # The lookup column follows Data when the correlation value changes
        assignments.append(f"{q(correlation_column)} = {p('CorrelationId')}")
        update_parameters.append("CorrelationId")
    assignments.append(f"{version} = {version} + 1")
    separator = ",\n    "

    update = CommandTemplate(
        text=(
            f"update {table_name}\n"
            f"set {separator.join(assignments)}\n"
            f"where {guard}"
        ),
        parameters=(*update_parameters, "Id", "ExpectedVersion"),
        dialect=dialect,
    )

    get_by_id = CommandTemplate(
        text=f"{select_from}\nwhere {q('Id')} = {p('Id')}",
        parameters=("Id",),
        dialect=dialect,
    )

    get_by_correlation = None
    if correlation_column:
        get_by_correlation = CommandTemplate(
            text=f"{select_from}\nwhere {q(correlation_column)} = {p('CorrelationId')}",
            parameters=("CorrelationId",),
            dialect=dialect,
        )

    complete = CommandTemplate(
        text=f"delete from {table_name}\nwhere {guard}",
        parameters=("Id", "ExpectedVersion"),
        dialect=dialect,
    )

    return SagaCommands(
        table_name=table_name,
        select_from=select_from,
        insert=insert,
        update=update,
        get_by_id=get_by_id,
        get_by_correlation=get_by_correlation,
        complete=complete,
    )
