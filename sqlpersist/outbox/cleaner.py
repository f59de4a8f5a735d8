"""
Periodic removal of old dispatched outbox entries.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlpersist.outbox.concurrency import utc_now

if TYPE_CHECKING:
    from sqlpersist.outbox.persister import OutboxPersister

logger = logging.getLogger(__name__)


class OutboxCleaner:
    """
    Removes dispatched outbox entries once they are older than the
    deduplication window.

    Args:
        persister: Outbox persister doing the deletes
        keep_for: How long dispatched entries are kept for deduplication
        interval: Pause between runs of the background thread
    """

    def __init__(self, persister: OutboxPersister, keep_for: timedelta, interval: timedelta):
        self._persister = persister
        self._keep_for = keep_for
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, now: datetime | None = None) -> int:
        """Remove expired entries once; returns the number removed."""
        cutoff = (now or utc_now()) - self._keep_for
        return self._persister.remove_entries_older_than(cutoff)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="sqlpersist-outbox-cleaner", daemon=True
        )
        self._thread.start()
        logger.info(f"Outbox cleaner started (interval={self._interval})")

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Outbox cleaner stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval.total_seconds()):
            try:
                self.run_once()
            except Exception as e:
                # Keep running; the next tick retries
                logger.warning(f"Outbox cleanup failed: {e}", exc_info=True)
