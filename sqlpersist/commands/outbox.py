"""
Outbox command builder.

Builds every command the outbox persister and the concurrency control
strategies issue against the outbox table. The commands are shared by both
strategies; a strategy only chooses which of them to run.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import DateTime

from sqlpersist.commands.base import CommandTemplate
from sqlpersist.dialects import SqlDialect

OUTBOX_TABLE = "OutboxData"
OUTBOX_TABLE_ABBREVIATION = "OD"
MESSAGE_ID_LENGTH = 200

STORE_COLUMNS = ("MessageId", "Operations", "PersistenceVersion")
DISPATCH_COLUMNS = ("Dispatched", "PersistenceVersion")


@dataclass(frozen=True)
class OutboxCommands:
    """
    Commands for the outbox table.

    Attributes:
        table_name: Quoted outbox table name
        optimistic_store: Insert the message with its operations unless it exists
        pessimistic_begin: Insert an empty placeholder row unless it exists
        pessimistic_complete: Write operations into the placeholder row
        get: Read Dispatched and Operations for a message
        read_for_dispatch: Read Dispatched and PersistenceVersion without locks
        lock_for_dispatch: Same read, holding a row lock until commit
        set_as_dispatched: Unconditionally mark a message dispatched
        set_as_dispatched_if_unchanged: Mark dispatched only if still undispatched
            and at the expected PersistenceVersion
        cleanup: Delete a batch of dispatched messages older than a cutoff
    """

    table_name: str
    optimistic_store: CommandTemplate
    pessimistic_begin: CommandTemplate
    pessimistic_complete: CommandTemplate
    get: CommandTemplate
    read_for_dispatch: CommandTemplate
    lock_for_dispatch: CommandTemplate
    set_as_dispatched: CommandTemplate
    set_as_dispatched_if_unchanged: CommandTemplate
    cleanup: CommandTemplate


def outbox_table_name(dialect: SqlDialect, table_prefix: str, schema: str | None) -> str:
    logical = dialect.abbreviate(OUTBOX_TABLE, OUTBOX_TABLE_ABBREVIATION)
    return dialect.table_name(table_prefix, logical, schema)


def build_outbox_commands(
    dialect: SqlDialect, table_prefix: str, schema: str | None = None
) -> OutboxCommands:
    """Build the outbox commands for a dialect."""
    table = outbox_table_name(dialect, table_prefix, schema)
    q = dialect.quote
    p = dialect.parameter
    dispatched_at = {"DispatchedAt": DateTime()}

    def command(sql: str, *parameters: str, types=None) -> CommandTemplate:
        return CommandTemplate(
            text=sql, parameters=parameters, dialect=dialect, types=types or {}
        )

    by_id = dialect.predicate(["MessageId"])

    mark = (
        f"update {table}\n"
        f"set {q('Dispatched')} = {dialect.boolean(True)},\n"
        f"    {q('DispatchedAt')} = {p('DispatchedAt')},\n"
        f"    {q('Operations')} = '[]'\n"
        f"where {by_id}"
    )

    return OutboxCommands(
        table_name=table,
        optimistic_store=command(
            dialect.insert_if_absent(table, "MessageId", STORE_COLUMNS), *STORE_COLUMNS
        ),
        pessimistic_begin=command(
            dialect.insert_if_absent(table, "MessageId", STORE_COLUMNS), *STORE_COLUMNS
        ),
        pessimistic_complete=command(
            f"update {table}\nset {dialect.assignments(['Operations'])}\nwhere {by_id}",
            "Operations",
            "MessageId",
        ),
        get=command(
            f"select {dialect.columns(['Dispatched', 'Operations', 'PersistenceVersion'])}\n"
            f"from {table}\n"
            f"where {by_id}",
            "MessageId",
        ),
        read_for_dispatch=command(
            f"select {dialect.columns(DISPATCH_COLUMNS)}\nfrom {table}\nwhere {by_id}",
            "MessageId",
        ),
        lock_for_dispatch=command(
            dialect.lock_for_update(table, DISPATCH_COLUMNS, "MessageId"), "MessageId"
        ),
        set_as_dispatched=command(mark, "DispatchedAt", "MessageId", types=dispatched_at),
        set_as_dispatched_if_unchanged=command(
            f"{mark}\n"
            f"  and {q('Dispatched')} = {dialect.boolean(False)}\n"
            f"  and {dialect.predicate(['PersistenceVersion'])}",
            "DispatchedAt",
            "MessageId",
            "PersistenceVersion",
            types=dispatched_at,
        ),
        cleanup=command(
            dialect.delete_batch(
                table,
                "MessageId",
                f"{q('Dispatched')} = {dialect.boolean(True)}\n"
                f"  and {q('DispatchedAt')} < {p('DispatchedBefore')}",
            ),
            "DispatchedBefore",
            "BatchSize",
            types={"DispatchedBefore": DateTime()},
        ),
    )
