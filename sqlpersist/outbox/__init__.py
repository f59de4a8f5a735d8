"""
Transactional outbox.

Deduplicated, at-least-once dispatch log of side effects, stored in the same
SQL transaction as the business data that produced them.
"""

from sqlpersist.outbox.cleaner import OutboxCleaner
from sqlpersist.outbox.concurrency import (
    ConcurrencyControlStrategy,
    DispatchHandle,
    OptimisticConcurrencyControlStrategy,
    PessimisticConcurrencyControlStrategy,
)
from sqlpersist.outbox.models import OutboxMessage, OutboxRecord, StoreResult, TransportOperation
from sqlpersist.outbox.persister import OutboxPersister
from sqlpersist.outbox.transaction import (
    ConnectionOutboxTransaction,
    OutboxTransaction,
    TransactionScopeOutboxTransaction,
)

__all__ = [
    "ConcurrencyControlStrategy",
    "ConnectionOutboxTransaction",
    "DispatchHandle",
    "OptimisticConcurrencyControlStrategy",
    "OutboxCleaner",
    "OutboxMessage",
    "OutboxPersister",
    "OutboxRecord",
    "OutboxTransaction",
    "PessimisticConcurrencyControlStrategy",
    "StoreResult",
    "TransactionScopeOutboxTransaction",
    "TransportOperation",
]
