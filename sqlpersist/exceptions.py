"""
sqlpersist exceptions.

This module defines custom exception classes used throughout the package.
Duplicate keys on store/subscribe are not errors and have no exception here;
they are reported through ``StoreResult``.
"""


class SqlPersistenceError(Exception):
    """Base class for all sqlpersist errors."""

    pass


class ConfigurationError(SqlPersistenceError):
    """
    Raised when persistence settings are invalid.

    Covers unknown dialects, table prefixes the dialect cannot hold, saga
    types that were never registered, and correlation properties whose type
    cannot be mapped to a column. Always raised while wiring components,
    never while executing SQL.
    """

    pass


class CorrelationPropertyError(ConfigurationError):
    """Raised when a saga lookup needs a correlation property it does not have."""

    pass


class ConcurrencyConflictError(SqlPersistenceError):
    """
    Raised when a version-guarded write affected zero rows.

    The caller is expected to re-read the current state and retry its
    business logic, or abandon the attempt.
    """

    pass


class SagaConcurrencyError(ConcurrencyConflictError):
    """
    Raised when a saga row changed (or appeared) underneath the caller.

    Attributes:
        saga_name: Name of the saga type
        saga_id: Saga instance ID
        expected_version: Version the caller expected, if any
    """

    def __init__(self, saga_name: str, saga_id: object, expected_version: int | None = None):
        self.saga_name = saga_name
        self.saga_id = saga_id
        self.expected_version = expected_version
        if expected_version is None:
            message = f"Saga '{saga_name}' with id {saga_id} already exists"
        else:
            message = (
                f"Saga '{saga_name}' with id {saga_id} was modified concurrently "
                f"(expected version {expected_version})"
            )
        super().__init__(message)


class TransactionStateError(SqlPersistenceError):
    """Raised when a transaction wrapper is used out of order."""

    pass
