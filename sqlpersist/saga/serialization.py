"""
Saga state serialization.
"""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

from sqlpersist.saga.data import SagaData

# Stored in Metadata rather than Data
METADATA_FIELDS = frozenset({"id", "originator", "original_message_id"})


@runtime_checkable
class SagaSerializer(Protocol):
    """Converts saga state to and from the text stored in the Data column."""

    def serialize(self, data: SagaData) -> str: ...

    def deserialize(self, payload: Any, entity_type: type[SagaData]) -> SagaData: ...


class JsonSagaSerializer:
    """JSON serializer built on pydantic."""

    def serialize(self, data: SagaData) -> str:
        return data.model_dump_json(exclude=set(METADATA_FIELDS))

    def deserialize(self, payload: Any, entity_type: type[SagaData]) -> SagaData:
        # jsonb columns come back already decoded
        if not isinstance(payload, (str, bytes)):
            payload = json.dumps(payload)
        return entity_type.model_validate_json(payload)


def serialize_metadata(data: SagaData) -> str:
    return json.dumps(
        {"Originator": data.originator, "OriginalMessageId": data.original_message_id}
    )


def deserialize_metadata(payload: Any) -> dict[str, Any]:
    if payload is None:
        return {}
    if isinstance(payload, (str, bytes)):
        return json.loads(payload)
    return dict(payload)
