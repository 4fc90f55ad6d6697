"""
Append-only audit log of processed uploads, one JSON object per line.
"""

from __future__ import annotations

import json
import logging
import queue
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener
from typing import Any, Dict, Optional

from shared.logging import get_logger


@dataclass(frozen=True)
class AuditRecord:
    """One processed upload request."""

    account: str
    filename: str
    in_bytes: int
    status: int
    duration_ms: int
    time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "user": self.account,
            "file": self.filename,
            "in_bytes": self.in_bytes,
            "status": self.status,
            "ms": self.duration_ms,
        }


class AuditLog:
    """Append-only JSON-lines request log.

    Records are handed to a queue and written by a listener thread, so request
    handling never waits on the file. Write failures are reported through the
    operational log and never reach the caller.
    """

    def __init__(self, path: str):
        self.path = path
        self.logger = get_logger("gateway.audit_log")

        self._file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        self._file_handler.setFormatter(logging.Formatter("%(message)s"))

        self._queue: "queue.SimpleQueue[logging.LogRecord]" = queue.SimpleQueue()
        self._audit_logger = logging.Logger("webplow.audit", logging.INFO)
        self._audit_logger.propagate = False
        self._audit_logger.addHandler(QueueHandler(self._queue))

        self._listener = QueueListener(self._queue, self._file_handler)
        self._listener.start()
        self._closed = False

    @classmethod
    def open(cls, path: Optional[str]) -> Optional["AuditLog"]:
        """Open the audit log at ``path``; returns None when disabled or unusable."""
        if not path:
            return None
        try:
            return cls(path)
        except OSError as exc:
            get_logger("gateway.audit_log").error("Audit log disabled", path=path, error=str(exc))
            return None

    def record(self, record: AuditRecord) -> None:
        if self._closed:
            return
        try:
            self._audit_logger.info(json.dumps(record.to_dict()))
        except Exception as exc:
            self.logger.warning("Audit record dropped", error=str(exc))

    def close(self) -> None:
        """Flush pending records and close the file."""
        if self._closed:
            return
        self._closed = True
        self._listener.stop()
        self._file_handler.close()
