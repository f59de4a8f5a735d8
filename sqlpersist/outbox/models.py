"""
Outbox records and payload models.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class TransportOperation(BaseModel):
    """
    One deferred side effect (an outgoing message) recorded in the outbox.

    The body is carried as base64 in the JSON payload.
    """

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    message_id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""


_operations_adapter = TypeAdapter(list[TransportOperation])


def serialize_operations(operations: list[TransportOperation]) -> str:
    return _operations_adapter.dump_json(operations).decode("utf-8")


def deserialize_operations(payload: Any) -> list[TransportOperation]:
    # jsonb columns come back already decoded
    if not payload:
        return []
    if not isinstance(payload, (str, bytes)):
        payload = json.dumps(payload)
    return _operations_adapter.validate_json(payload)


class StoreResult(str, Enum):
    """Outcome of storing an outbox record. Neither value is an error."""

    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class OutboxMessage:
    """Pending operations produced while handling one incoming message."""

    message_id: str
    operations: list[TransportOperation] = field(default_factory=list)


@dataclass(frozen=True)
class OutboxRecord:
    """
    A stored outbox row.

    Attributes:
        message_id: Natural key (incoming message ID)
        dispatched: Whether the operations were dispatched; once True, never reverts
        operations: Pending operations (empty after dispatch)
        persistence_version: Schema version tag the row was written with
    """

    message_id: str
    dispatched: bool
    operations: list[TransportOperation]
    persistence_version: str
