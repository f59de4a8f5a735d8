"""
Subscription persister.

Stores which subscriber receives which message types. Subscribing twice is
not an error: the row is overwritten with the latest endpoint.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlpersist.config import PERSISTENCE_VERSION

if TYPE_CHECKING:
    from sqlpersist.commands.subscription import SubscriptionCommands
    from sqlpersist.storage.connection import ConnectionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subscriber:
    """
    A subscribing endpoint instance.

    Attributes:
        transport_address: Address messages are sent to
        endpoint: Logical endpoint name, if known
    """

    transport_address: str
    endpoint: str | None = None


class SubscriptionPersister:
    """
    Subscription storage.

    Args:
        connection_manager: Source of connections
        commands: Subscription commands for the configured dialect
        cache_for: How long get_subscribers results are cached; None disables
            caching
        persistence_version: Version tag written with new rows
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        commands: SubscriptionCommands,
        cache_for: timedelta | None = None,
        persistence_version: str = PERSISTENCE_VERSION,
    ):
        self._connection_manager = connection_manager
        self._commands = commands
        self._cache_for = cache_for.total_seconds() if cache_for else None
        self._persistence_version = persistence_version
        self._cache: dict[tuple[str, ...], tuple[float, list[Subscriber]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber, message_type: str) -> None:
        with self._connection_manager.begin() as connection:
            self._commands.subscribe.execute(
                connection,
                Subscriber=subscriber.transport_address,
                MessageType=message_type,
                Endpoint=subscriber.endpoint,
                PersistenceVersion=self._persistence_version,
            )
        self._clear_cache()
        logger.info(f"Subscribed {subscriber.transport_address} to {message_type}")

    def unsubscribe(self, subscriber: Subscriber, message_type: str) -> None:
        """Remove a subscription; unknown subscriptions are ignored."""
        with self._connection_manager.begin() as connection:
            self._commands.unsubscribe.execute(
                connection,
                Subscriber=subscriber.transport_address,
                MessageType=message_type,
            )
        self._clear_cache()
        logger.info(f"Unsubscribed {subscriber.transport_address} from {message_type}")

    def get_subscribers(self, message_types: Iterable[str]) -> list[Subscriber]:
        """
        Return the distinct subscribers of any of ``message_types``.

        An empty input returns an empty list without touching the database.
        """
        key = tuple(sorted(set(message_types)))
        if not key:
            return []

        if self._cache_for is not None:
            now = time.monotonic()
            with self._lock:
                expired = [k for k, (expires, _) in self._cache.items() if expires <= now]
                for stale in expired:
                    del self._cache[stale]
                cached = self._cache.get(key)
            if cached is not None:
                return list(cached[1])

        command = self._commands.get_subscribers(len(key))
        values = {f"type{i}": message_type for i, message_type in enumerate(key)}
        with self._connection_manager.connect() as connection:
            rows = command.execute(connection, **values).all()

        subscribers = list(dict.fromkeys(Subscriber(row[0], row[1]) for row in rows))
        if self._cache_for is not None:
            with self._lock:
                self._cache[key] = (time.monotonic() + self._cache_for, subscribers)
        return list(subscribers)

    def _clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
