"""Saga state persistence."""

from sqlpersist.saga.data import SagaData, SagaMetadata, SagaRecord
from sqlpersist.saga.definition import CorrelationProperty, CorrelationPropertyType, SagaDefinition
from sqlpersist.saga.info_cache import RuntimeSagaInfo, SagaInfoCache
from sqlpersist.saga.persister import SagaPersister
from sqlpersist.saga.serialization import JsonSagaSerializer, SagaSerializer

__all__ = [
    "CorrelationProperty",
    "CorrelationPropertyType",
    "JsonSagaSerializer",
    "RuntimeSagaInfo",
    "SagaData",
    "SagaDefinition",
    "SagaInfoCache",
    "SagaMetadata",
    "SagaPersister",
    "SagaRecord",
    "SagaSerializer",
]
