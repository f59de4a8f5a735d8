"""
Persistence configuration.

The configuration is an immutable value built once by the caller and passed
into every component constructor. Table settings are validated as soon as the
value is constructed, so a bad prefix fails at startup rather than when the
first statement is issued.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlpersist.dialects import Oracle, SqlDialect, dialect_from_name
from sqlpersist.exceptions import ConfigurationError

if TYPE_CHECKING:
    from sqlpersist.saga.serialization import SagaSerializer

PERSISTENCE_VERSION = "1.0.0"


@dataclass(frozen=True)
class OutboxSettings:
    """
    Outbox behaviour, fixed for the lifetime of the process.

    Attributes:
        pessimistic: Use row locks instead of version checks for dispatch
        transaction_scope: Enlist in the ambient TransactionScope instead of
            owning a connection-level transaction
        keep_deduplication_data_for: Age after which dispatched rows are removed
        cleanup_interval: How often the cleaner runs; None disables it
        cleanup_batch_size: Maximum rows deleted per cleanup statement
    """

    pessimistic: bool = False
    transaction_scope: bool = False
    keep_deduplication_data_for: timedelta = timedelta(days=7)
    cleanup_interval: timedelta | None = timedelta(minutes=1)
    cleanup_batch_size: int = 10000


@dataclass(frozen=True)
class SagaSettings:
    """
    Saga persistence settings.

    Attributes:
        serializer: Serializer pair for saga state; JSON via pydantic when None
        name_filter: Maps a saga name to its table suffix (e.g. to shorten it)
    """

    serializer: SagaSerializer | None = None
    name_filter: Callable[[str], str] | None = None


@dataclass(frozen=True)
class SubscriptionSettings:
    """Subscription settings. ``cache_for=None`` disables the subscriber cache."""

    cache_for: timedelta | None = None


@dataclass(frozen=True)
class PersistenceConfig:
    """
    Immutable persistence configuration.

    Args:
        dialect: Dialect instance or name ("PostgreSql", "postgresql", ...)
        table_prefix: Prefix applied to every table
        schema: Schema name, or None for the dialect default
        command_timeout: Limit on how long a single statement may run; None
            leaves the driver default

    Example:
        >>> config = PersistenceConfig(dialect="PostgreSql", table_prefix="Sales_")
        >>> config.dialect
        PostgreSql()
    """

    dialect: SqlDialect | str
    table_prefix: str = ""
    schema: str | None = None
    outbox: OutboxSettings = field(default_factory=OutboxSettings)
    saga: SagaSettings = field(default_factory=SagaSettings)
    subscriptions: SubscriptionSettings = field(default_factory=SubscriptionSettings)
    command_timeout: timedelta | None = None

    def __post_init__(self) -> None:
        if isinstance(self.dialect, str):
            object.__setattr__(self, "dialect", dialect_from_name(self.dialect))
        elif not isinstance(self.dialect, SqlDialect):
            raise ConfigurationError(f"Unknown SQL dialect: {self.dialect!r}")
        validate_table_settings(self.sql_dialect, self.table_prefix, self.schema)
        if self.outbox.cleanup_batch_size <= 0:
            raise ConfigurationError(
                f"cleanup_batch_size must be positive, got {self.outbox.cleanup_batch_size}"
            )
        if self.command_timeout is not None and self.command_timeout <= timedelta(0):
            raise ConfigurationError(
                f"command_timeout must be positive, got {self.command_timeout}"
            )

    @property
    def sql_dialect(self) -> SqlDialect:
        """The resolved dialect (``dialect`` is always resolved after construction)."""
        return self.dialect  # type: ignore[return-value]

    @classmethod
    def for_endpoint(
        cls, endpoint_name: str, dialect: SqlDialect | str, **kwargs: Any
    ) -> PersistenceConfig:
        """Build a configuration whose table prefix is derived from the endpoint name."""
        return cls(dialect=dialect, table_prefix=endpoint_name.replace(".", "_") + "_", **kwargs)


def validate_table_settings(dialect: SqlDialect, table_prefix: str, schema: str | None) -> None:
    """
    Validate table naming settings against the dialect's identifier rules.

    Raises:
        ConfigurationError: If Oracle is given a prefix longer than 25
            characters or containing non-ASCII characters
    """
    if isinstance(dialect, Oracle):
        if len(table_prefix) > Oracle.max_table_prefix_length:
            raise ConfigurationError(
                f"Table prefix '{table_prefix}' contains more than "
                f"{Oracle.max_table_prefix_length} characters, which is not supported by "
                f"SQL persistence using Oracle. Shorten the endpoint name or specify a custom "
                f"prefix using PersistenceConfig(table_prefix=...)."
            )
        if not table_prefix.isascii():
            raise ConfigurationError(
                f"Table prefix '{table_prefix}' contains non-ASCII characters, which is not "
                f"supported by SQL persistence using Oracle. Change the endpoint name or "
                f"specify a custom prefix using PersistenceConfig(table_prefix=...)."
            )
    if schema is not None and not schema.strip():
        raise ConfigurationError("Schema must not be blank; pass None to use the default schema")
