"""
Saga table definitions.

A SagaDefinition is computed once per saga type at startup and drives both
the DDL and the correlation lookups. Correlation values are strings.
"""

from dataclasses import dataclass
from enum import Enum


class CorrelationPropertyType(str, Enum):
    """Column types a correlation property can map to."""

    STRING = "String"


@dataclass(frozen=True)
class CorrelationProperty:
    """The saga field used to find an in-flight saga from an incoming message."""

    name: str
    type: CorrelationPropertyType = CorrelationPropertyType.STRING


@dataclass(frozen=True)
class SagaDefinition:
    """
    Table-level description of one saga type.

    Attributes:
        table_suffix: Table name without prefix (possibly shortened)
        name: Saga entity name
        correlation_property: Correlation property, or None
    """

    table_suffix: str
    name: str
    correlation_property: CorrelationProperty | None = None
