"""Publish-subscribe event bus for run progress notifications.

Emitting never blocks the solver thread: records go into a bounded queue that
a daemon dispatcher thread drains.  When the queue is full the new record is
dropped and counted, so a slow subscriber can only lose notifications, never
stall a solve.  ``threaded=False`` dispatches inline on the emitting thread.
"""
from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable

_STOP = object()


class EventBus:
    def __init__(self, keep_history: bool = False, max_pending: int = 1024,
                 threaded: bool = True):
        self._subscribers: dict = {}
        self._keep_history = keep_history
        self._history: list = []
        self._threaded = threaded
        self._queue: queue.Queue = queue.Queue(maxsize=max_pending)
        self._lock = threading.Lock()
        self._dispatcher: Optional[threading.Thread] = None
        self._dropped = 0
        self._closed = False

    def subscribe(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            if event not in self._subscribers:
                self._subscribers[event] = []
            self._subscribers[event].append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            if event in self._subscribers:
                self._subscribers[event] = [
                    h for h in self._subscribers[event] if h is not handler
                ]

    def emit(self, event: str, data: dict) -> None:
        record = {
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._keep_history:
            self._history.append(record)
        if self._closed:
            return

        if not self._threaded:
            self._deliver(record)
            return

        self._ensure_dispatcher()
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1
            logger.debug("Event queue full, dropped %s", event)

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is not None:
            return
        with self._lock:
            if self._dispatcher is None:
                self._dispatcher = threading.Thread(
                    target=self._dispatch_loop, name="event-bus", daemon=True,
                )
                self._dispatcher.start()

    def _dispatch_loop(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is _STOP:
                    return
                self._deliver(record)
            finally:
                self._queue.task_done()

    def _deliver(self, record: dict) -> None:
        event = record["event"]
        with self._lock:
            handlers = list(self._subscribers.get(event, []))
            handlers.extend(self._subscribers.get("*", []))

        for handler in handlers:
            try:
                handler(record["data"])
            except Exception:
                logger.exception("Event handler error for %s", event)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued record has been delivered.

        Returns False if ``timeout`` elapsed first.
        """
        if self._dispatcher is None:
            return True
        done = threading.Event()

        def _wait() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_wait, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Deliver what is queued, then stop the dispatcher thread."""
        if self._closed:
            return
        self._closed = True
        if self._dispatcher is not None:
            self._queue.put(_STOP)
            self._dispatcher.join(timeout)

    @property
    def dropped(self) -> int:
        return self._dropped

    def get_history(self) -> list:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()
