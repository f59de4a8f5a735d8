"""
Subscription command builder.

Builds the subscribe, unsubscribe and get-subscribers commands for the
subscription table. There is exactly one builder for all dialects; the
dialect supplies the quoting, the markers and the upsert idiom.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlpersist.commands.base import CommandTemplate
from sqlpersist.dialects import SqlDialect, build_in_clause

SUBSCRIPTION_TABLE = "SubscriptionData"
SUBSCRIPTION_TABLE_ABBREVIATION = "SS"

KEY_COLUMNS = ("Subscriber", "MessageType")
VALUE_COLUMNS = ("Endpoint", "PersistenceVersion")


@dataclass(frozen=True)
class SubscriptionCommands:
    """Commands for the subscription table."""

    table_name: str
    subscribe: CommandTemplate
    unsubscribe: CommandTemplate
    get_subscribers: Callable[[int], CommandTemplate]


def subscription_table_name(dialect: SqlDialect, table_prefix: str, schema: str | None) -> str:
    logical = dialect.abbreviate(SUBSCRIPTION_TABLE, SUBSCRIPTION_TABLE_ABBREVIATION)
    return dialect.table_name(table_prefix, logical, schema)


def build_subscription_commands(
    dialect: SqlDialect, table_prefix: str, schema: str | None = None
) -> SubscriptionCommands:
    """
    Build the subscription commands for a dialect.

    Args:
        dialect: Target SQL dialect
        table_prefix: Table prefix (validated by ``PersistenceConfig``)
        schema: Schema name, or None for the dialect default

    Returns:
        SubscriptionCommands; ``get_subscribers(n)`` builds a query binding
        exactly ``n`` message types named ``type0`` .. ``type{n-1}``
    """
    table = subscription_table_name(dialect, table_prefix, schema)

    subscribe = CommandTemplate(
        text=dialect.upsert(table, KEY_COLUMNS, VALUE_COLUMNS),
        parameters=(*KEY_COLUMNS, *VALUE_COLUMNS),
        dialect=dialect,
    )

    unsubscribe = CommandTemplate(
        text=f"delete from {table}\nwhere {dialect.predicate(KEY_COLUMNS)}",
        parameters=KEY_COLUMNS,
        dialect=dialect,
    )

    select = (
        f"select distinct {dialect.columns(['Subscriber', 'Endpoint'])}\n"
        f"from {table}\n"
        f"where {dialect.quote('MessageType')} in "
    )

    def get_subscribers(message_type_count: int) -> CommandTemplate:
        fragment, names = build_in_clause(dialect, message_type_count)
        return CommandTemplate(text=select + fragment, parameters=tuple(names), dialect=dialect)

    return SubscriptionCommands(
        table_name=table,
        subscribe=subscribe,
        unsubscribe=unsubscribe,
        get_subscribers=get_subscribers,
    )
