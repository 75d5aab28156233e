"""Cooperative cancellation for solver loops.

Solvers poll the token between timesteps only; a step that has started is
always finished or rolled back before the request is honoured.
"""
from __future__ import annotations

import threading


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)
