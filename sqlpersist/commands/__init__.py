"""
Pure SQL command builders.

Given a dialect and naming parameters, these functions produce command
templates ready to bind and execute. They never perform I/O.
"""

from sqlpersist.commands.base import CommandTemplate
from sqlpersist.commands.outbox import OutboxCommands, build_outbox_commands, outbox_table_name
from sqlpersist.commands.saga import SagaCommands, build_saga_commands, correlation_column_name
from sqlpersist.commands.subscription import (
    SubscriptionCommands,
    build_subscription_commands,
    subscription_table_name,
)

__all__ = [
    "CommandTemplate",
    "OutboxCommands",
    "SagaCommands",
    "SubscriptionCommands",
    "build_outbox_commands",
    "build_saga_commands",
    "build_subscription_commands",
    "correlation_column_name",
    "outbox_table_name",
    "subscription_table_name",
]
