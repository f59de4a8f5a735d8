"""
Saga state models.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class SagaData(BaseModel):
    """
    Base class for saga state.

    Subclass it with the saga's own fields. ``originator`` and
    ``original_message_id`` are kept in the Metadata column, not in Data.
    """

    id: UUID = Field(default_factory=uuid4)
    originator: str | None = None
    original_message_id: str | None = None


TSagaData = TypeVar("TSagaData", bound=SagaData)


@dataclass(frozen=True)
class SagaMetadata:
    """
    Registration of one saga type.

    Attributes:
        name: Saga name; becomes the table suffix (after the name filter)
        entity_type: SagaData subclass holding the state
        correlation_property: Field of ``entity_type`` used for lookups
    """

    name: str
    entity_type: type[SagaData]
    correlation_property: str | None = None


@dataclass(frozen=True)
class SagaRecord(Generic[TSagaData]):
    """Saga state together with the version it was read at."""

    data: TSagaData
    version: int
