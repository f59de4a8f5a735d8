"""
Per-saga runtime information.

Everything a saga operation needs (table name, commands, serializer) is
computed once, when the cache is built, and only read afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from types import UnionType
from typing import TYPE_CHECKING, Any, Union, get_args, get_origin

from sqlpersist.commands.saga import SagaCommands, build_saga_commands, correlation_column_name
from sqlpersist.exceptions import ConfigurationError
from sqlpersist.saga.data import SagaData, SagaMetadata
from sqlpersist.saga.definition import CorrelationProperty, CorrelationPropertyType, SagaDefinition
from sqlpersist.saga.serialization import JsonSagaSerializer, SagaSerializer

if TYPE_CHECKING:
    from sqlpersist.config import PersistenceConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeSagaInfo:
    """
    Resolved persistence information for one saga type.

    Attributes:
        definition: Table-level definition (drives the DDL)
        table_name: Quoted, schema-qualified table name
        correlation_column: Unquoted correlation column, or None
        commands: Saga commands for the configured dialect
        serializer: Serializer for the Data column
    """

    metadata: SagaMetadata
    definition: SagaDefinition
    table_name: str
    correlation_column: str | None
    commands: SagaCommands
    serializer: SagaSerializer

    @property
    def entity_type(self) -> type[SagaData]:
        return self.metadata.entity_type


def _is_string(annotation: Any) -> bool:
    """``str`` or ``str | None``."""
    if annotation is str:
        return True
    if get_origin(annotation) in (Union, UnionType):
        return [arg for arg in get_args(annotation) if arg is not type(None)] == [str]
    return False


def _correlation_property(metadata: SagaMetadata) -> CorrelationProperty | None:
    name = metadata.correlation_property
    if name is None:
        return None
    field = metadata.entity_type.model_fields.get(name)
    if field is None:
        raise ConfigurationError(
            f"Saga {metadata.name!r}: correlation property {name!r} is not a field of "
            f"{metadata.entity_type.__name__}"
        )
    if not _is_string(field.annotation):
        raise ConfigurationError(
            f"Saga {metadata.name!r}: correlation property {name!r} has type "
            f"{field.annotation!r}; only str correlation properties are supported"
        )
    return CorrelationProperty(name=name, type=CorrelationPropertyType.STRING)


class SagaInfoCache:
    """
    Read-only cache of RuntimeSagaInfo keyed by saga entity type.

    Args:
        config: Persistence configuration
        metadata: Registered sagas
    """

    def __init__(self, config: PersistenceConfig, metadata: Iterable[SagaMetadata]):
        self._config = config
        self._serializer: SagaSerializer = config.saga.serializer or JsonSagaSerializer()
        self._infos: dict[type[SagaData], RuntimeSagaInfo] = {}
        for saga in metadata:
            self._infos[saga.entity_type] = self._build(saga)

    def _build(self, metadata: SagaMetadata) -> RuntimeSagaInfo:
        if metadata.entity_type in self._infos:
            raise ConfigurationError(
                f"Saga data type {metadata.entity_type.__name__} is registered twice"
            )
        dialect = self._config.sql_dialect
        prefix = self._config.table_prefix
        name_filter = self._config.saga.name_filter
        suffix = name_filter(metadata.name) if name_filter else metadata.name

        definition = SagaDefinition(
            table_suffix=suffix,
            name=metadata.name,
            correlation_property=_correlation_property(metadata),
        )

        # Imported here; the scripts module depends on the saga definitions
        from sqlpersist.storage.scripts import saga_index_name

        correlation_column = None
        if definition.correlation_property is not None:
            correlation_column = correlation_column_name(definition.correlation_property.name)

        names = [prefix + suffix]
        if definition.correlation_property is not None:
            names.append(saga_index_name(dialect, prefix, definition))
        for name in names:
            if len(name) > dialect.max_identifier_length:
                raise ConfigurationError(
                    f"Saga {metadata.name!r}: identifier '{name}' is longer than the "
                    f"{dialect.max_identifier_length} characters allowed by {dialect.name}. "
                    f"Use SagaSettings(name_filter=...) to shorten it."
                )
        too_long = correlation_column and len(correlation_column) > dialect.max_identifier_length
        if too_long:
            raise ConfigurationError(
                f"Saga {metadata.name!r}: correlation column '{correlation_column}' is longer "
                f"than the {dialect.max_identifier_length} characters allowed by {dialect.name}. "
                f"Rename the correlation property."
            )
        table_name = dialect.table_name(prefix, suffix, self._config.schema)

        logger.debug(f"Registered saga {metadata.name} as {table_name}")
        return RuntimeSagaInfo(
            metadata=metadata,
            definition=definition,
            table_name=table_name,
            correlation_column=correlation_column,
            commands=build_saga_commands(dialect, table_name, correlation_column),
            serializer=self._serializer,
        )

    def get(self, entity_type: type[SagaData]) -> RuntimeSagaInfo:
        info = self._infos.get(entity_type)
        if info is None:
            raise ConfigurationError(
                f"Saga data type {entity_type.__name__} is not registered with sql persistence"
            )
        return info

    def __iter__(self) -> Iterator[RuntimeSagaInfo]:
        return iter(self._infos.values())

    def __len__(self) -> int:
        return len(self._infos)
