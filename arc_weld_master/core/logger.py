"""Structured logging for weld simulation runs.

Three outputs share one log directory:

- ``app.log``: rotating human-readable application log
- ``convergence.jsonl``: one record per thermal / mechanical step
- ``runs.jsonl``: run lifecycle events (state transitions, summaries)
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional


class StructuredLogger:
    def __init__(self, log_dir: str = "data/logs", level: str = "INFO"):
        self._log_dir = log_dir
        os.makedirs(log_dir, exist_ok=True)
        self._setup_app_logger(level)

    def _setup_app_logger(self, level: str) -> None:
        self._app_logger = logging.getLogger("awm." + str(id(self)))
        if not self._app_logger.handlers:
            handler = RotatingFileHandler(
                os.path.join(self._log_dir, "app.log"),
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            handler.setFormatter(
                logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
            )
            self._app_logger.addHandler(handler)
            self._app_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    @property
    def app(self) -> logging.Logger:
        return self._app_logger

    @property
    def log_dir(self) -> str:
        return self._log_dir

    def _write_jsonl(self, filename: str, record: dict) -> None:
        filepath = os.path.join(self._log_dir, filename)
        with open(filepath, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    def log_step(self, run_id: str, step: dict) -> None:
        """Append one solver step (thermal or mechanical) to the convergence log."""
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": run_id,
            **step,
        }
        self._write_jsonl("convergence.jsonl", record)

    def log_run(
        self,
        run_id: str,
        event_type: str,
        data: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": run_id,
            "event_type": event_type,
            "data": data or {},
            "metadata": metadata or {},
        }
        self._write_jsonl("runs.jsonl", record)

    def close(self) -> None:
        for handler in list(self._app_logger.handlers):
            handler.close()
            self._app_logger.removeHandler(handler)
