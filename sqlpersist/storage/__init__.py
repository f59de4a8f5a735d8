"""Connection and transaction management for sqlpersist."""

from sqlpersist.storage.connection import ConnectionManager, TransactionScope, set_command_timeout
from sqlpersist.storage.scripts import (
    build_outbox_create_script,
    build_outbox_drop_script,
    build_saga_create_script,
    build_saga_drop_script,
    build_subscription_create_script,
    build_subscription_drop_script,
    install_schema,
)

__all__ = [
    "ConnectionManager",
    "TransactionScope",
    "build_outbox_create_script",
    "build_outbox_drop_script",
    "build_saga_create_script",
    "build_saga_drop_script",
    "build_subscription_create_script",
    "build_subscription_drop_script",
    "install_schema",
    "set_command_timeout",
]
