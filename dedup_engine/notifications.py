"""
Fire-and-forget event publishing.

Detection and merge code calls Notifier.publish() and moves on; a daemon
worker thread hands each event to the configured sink. A failing sink is
logged and never reaches the caller. Delivery itself (webhooks, queues) is
the sink's business.
"""

import queue
import threading
from collections.abc import Callable
from typing import Any, Optional

from loguru import logger

DUPLICATE_DETECTED = "duplicate.detected"
MERGE_COMPLETED = "merge.completed"
MERGE_REVERTED = "merge.reverted"

Sink = Callable[[str, dict[str, Any]], None]

_STOP = object()


class Notifier:
    """
    Queue events for asynchronous delivery to `sink(event, payload)`.

    Args:
        sink: Callable receiving (event name, payload). Events are dropped
            when no sink is configured.
        max_queue: Queue bound; events beyond it are dropped with a warning
    """

    def __init__(self, sink: Optional[Sink] = None, max_queue: int = 1000):
        self.sink = sink
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.delivered = 0
        self.failed = 0

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._run, name="dedup-notifier", daemon=True)
                self._worker.start()

    def publish(self, event: str, payload: dict[str, Any]) -> bool:
        """Queue an event. Returns False if it was dropped."""
        if self.sink is None:
            logger.debug(f"No notification sink configured, dropping {event}")
            return False

        self._ensure_worker()
        try:
            self._queue.put_nowait((event, payload))
        except queue.Full:
            logger.warning(f"Notification queue full, dropping {event}")
            return False
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                event, payload = item
                try:
                    self.sink(event, payload)
                    self.delivered += 1
                except Exception as e:
                    self.failed += 1
                    logger.error(f"Notification sink failed for {event}: {e}")
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been handed to the sink."""
        if self._worker is not None and self._worker.is_alive():
            self._queue.join()

    def close(self) -> None:
        """Deliver what is queued, then stop the worker."""
        if self._worker is not None and self._worker.is_alive():
            self._queue.put(_STOP)
            self._worker.join()
        self._worker = None
