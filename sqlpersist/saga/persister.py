"""
Saga persister.

Saga state is stored one row per saga instance. Every write is guarded by the
PersistenceVersion read with the state; a write that affects no rows means
another handler changed the saga first, and SagaConcurrencyError is raised so
the incoming message can be retried.

All operations run on a connection supplied by the caller, normally the
connection of the outbox transaction handling the message.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from sqlpersist.exceptions import CorrelationPropertyError, SagaConcurrencyError
from sqlpersist.saga.data import SagaData, SagaRecord
from sqlpersist.saga.serialization import deserialize_metadata, serialize_metadata

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Row

    from sqlpersist.saga.info_cache import RuntimeSagaInfo, SagaInfoCache

logger = logging.getLogger(__name__)


class SagaPersister:
    """
    Saga storage.

    Args:
        info_cache: Runtime information for the registered sagas
    """

    def __init__(self, info_cache: SagaInfoCache):
        self._info_cache = info_cache

    def save(self, data: SagaData, connection: Connection) -> int:
        """
        Insert a new saga.

        Returns:
            The initial version, 0

        Raises:
            SagaConcurrencyError: If a saga with the same id or correlation
                value already exists
            ValueError: If the correlation property is not set
        """
        info = self._info_cache.get(type(data))
        values: dict[str, Any] = {
            "Id": str(data.id),
            "Metadata": serialize_metadata(data),
            "Data": info.serializer.serialize(data),
            "PersistenceVersion": 0,
        }
        if info.correlation_column is not None:
            values["CorrelationId"] = self._correlation_value(info, data)

        try:
            info.commands.insert.execute(connection, **values)
        except IntegrityError as e:
            raise SagaConcurrencyError(info.definition.name, str(data.id)) from e

        logger.debug(f"Saved saga {info.definition.name} {data.id}")
        return 0

    def get(
        self, entity_type: type[SagaData], saga_id: UUID | str, connection: Connection
    ) -> SagaRecord | None:
        """Read a saga by id; None if it does not exist."""
        info = self._info_cache.get(entity_type)
        row = info.commands.get_by_id.execute(connection, Id=str(saga_id)).first()
        return self._to_record(info, row)

    def get_by_property(
        self,
        entity_type: type[SagaData],
        property_name: str,
        value: Any,
        connection: Connection,
    ) -> SagaRecord | None:
        """
        Read a saga by its correlation property.

        Raises:
            CorrelationPropertyError: If the saga has no correlation property,
                or ``property_name`` is not it
        """
        info = self._info_cache.get(entity_type)
        prop = info.definition.correlation_property
        if prop is None or info.commands.get_by_correlation is None:
            raise CorrelationPropertyError(
                f"Saga {info.definition.name!r} has no correlation property; "
                f"cannot look it up by {property_name!r}"
            )
        if prop.name != property_name:
            raise CorrelationPropertyError(
                f"Saga {info.definition.name!r} is correlated on {prop.name!r}, "
                f"not {property_name!r}"
            )
        row = info.commands.get_by_correlation.execute(connection, CorrelationId=value).first()
        return self._to_record(info, row)

    def update(self, data: SagaData, expected_version: int, connection: Connection) -> int:
        """
        Overwrite saga state, including a changed correlation value.

        Returns:
            The new version

        Raises:
            SagaConcurrencyError: If the saga is gone, its version moved on, or
                another saga already uses the new correlation value
            ValueError: If the correlation property was cleared
        """
        info = self._info_cache.get(type(data))
        values: dict[str, Any] = {
            "Data": info.serializer.serialize(data),
            "Metadata": serialize_metadata(data),
            "Id": str(data.id),
            "ExpectedVersion": expected_version,
        }
        if info.correlation_column is not None:
            values["CorrelationId"] = self._correlation_value(info, data)

        try:
            result = info.commands.update.execute(connection, **values)
        except IntegrityError as e:
            # Another saga already owns the new correlation value
            raise SagaConcurrencyError(info.definition.name, str(data.id), expected_version) from e
        if result.rowcount == 0:
            raise SagaConcurrencyError(info.definition.name, str(data.id), expected_version)
        return expected_version + 1

    def complete(
        self,
        data: SagaData | UUID | str,
        expected_version: int,
        connection: Connection,
        entity_type: type[SagaData] | None = None,
    ) -> None:
        """
        Delete a finished saga.

        Args:
            data: Saga state, or its id together with ``entity_type``

        Raises:
            SagaConcurrencyError: If the saga is gone or its version moved on
        """
        if isinstance(data, SagaData):
            entity_type = type(data)
            saga_id = str(data.id)
        else:
            if entity_type is None:
                raise TypeError("entity_type is required when completing a saga by id")
            saga_id = str(data)

        info = self._info_cache.get(entity_type)
        result = info.commands.complete.execute(
            connection, Id=saga_id, ExpectedVersion=expected_version
        )
        if result.rowcount == 0:
            raise SagaConcurrencyError(info.definition.name, saga_id, expected_version)
        logger.debug(f"Completed saga {info.definition.name} {saga_id}")

    def _correlation_value(self, info: RuntimeSagaInfo, data: SagaData) -> Any:
        prop = info.definition.correlation_property.name  # type: ignore[union-attr]
        value = getattr(data, prop)
        if value is None:
            raise ValueError(
                f"Saga {info.definition.name!r}: correlation property {prop!r} must be set"
            )
        return value

    def _to_record(self, info: RuntimeSagaInfo, row: Row | None) -> SagaRecord | None:
        if row is None:
            return None
        saga_id, metadata, payload, version = row[0], row[1], row[2], row[3]
        state = info.serializer.deserialize(payload, info.entity_type)
        meta = deserialize_metadata(metadata)
        state = state.model_copy(
            update={
                "id": UUID(str(saga_id)),
                "originator": meta.get("Originator"),
                "original_message_id": meta.get("OriginalMessageId"),
            }
        )
        return SagaRecord(data=state, version=int(version))
