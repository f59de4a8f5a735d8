"""
sqlpersist - SQL persistence for sagas, the transactional outbox and
subscriptions on Microsoft SQL Server, MySQL, Oracle and PostgreSQL.

Example:
    >>> from sqlpersist import PersistenceConfig, OutboxSettings, SqlPersistence
    >>>
    >>> persistence = SqlPersistence(
    ...     PersistenceConfig(
    ...         dialect="PostgreSql",
    ...         table_prefix="Sales_",
    ...         outbox=OutboxSettings(pessimistic=True),
    ...     ),
    ...     db_url="postgresql+psycopg://localhost/sales",
    ... )
    >>> persistence.initialize()
"""

from sqlpersist.config import (
    OutboxSettings,
    PersistenceConfig,
    SagaSettings,
    SubscriptionSettings,
)
from sqlpersist.dialects import MsSqlServer, MySql, Oracle, PostgreSql, SqlDialect
from sqlpersist.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    CorrelationPropertyError,
    SagaConcurrencyError,
    SqlPersistenceError,
    TransactionStateError,
)
from sqlpersist.outbox import OutboxMessage, StoreResult, TransportOperation
from sqlpersist.persistence import SqlPersistence
from sqlpersist.saga import SagaData, SagaMetadata, SagaRecord
from sqlpersist.storage import TransactionScope
from sqlpersist.subscription import Subscriber

__version__ = "0.1.0"

__all__ = [
    "SqlPersistence",
    "PersistenceConfig",
    "OutboxSettings",
    "SagaSettings",
    "SubscriptionSettings",
    "SqlDialect",
    "MsSqlServer",
    "MySql",
    "Oracle",
    "PostgreSql",
    "OutboxMessage",
    "StoreResult",
    "TransportOperation",
    "SagaData",
    "SagaMetadata",
    "SagaRecord",
    "Subscriber",
    "TransactionScope",
    "SqlPersistenceError",
    "ConfigurationError",
    "CorrelationPropertyError",
    "ConcurrencyConflictError",
    "SagaConcurrencyError",
    "TransactionStateError",
]
