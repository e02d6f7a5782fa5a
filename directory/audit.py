from __future__ import annotations

import datetime
import os
import threading
from typing import List

import structlog

logger = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%d/%b/%Y %H:%M:%S"


class AuditLog:
    """Append-only audit trail, one event per line."""

    def __init__(self, path: str, operator: str = "anonymous") -> None:
        self.path = path
        self.operator = operator
        self._lock = threading.Lock()

    def bind(self, operator: str) -> "AuditLog":
        """Same file and lock, written under another operator name."""
        bound = AuditLog(self.path, operator=operator or "anonymous")
        bound._lock = self._lock
        return bound

    def info(self, message: str) -> None:
        self._append("INFO", message)

    def warning(self, message: str) -> None:
        self._append("WARNING", message)

    def error(self, message: str) -> None:
        self._append("ERROR", message)

    def _append(self, level: str, message: str) -> None:
        timestamp = datetime.datetime.now().strftime(TIMESTAMP_FORMAT)
        # Keep one event per line even when a remote error message spans several.
        flat = " ".join(str(message).split())
        entry = f"[{timestamp}] {level} {self.operator}: {flat}"
        try:
            with self._lock, open(self.path, "a", encoding="utf-8") as handle:
                handle.write(entry + "\n")
        except OSError as exc:
            logger.error("audit_write_failed", path=self.path, error=str(exc))

    def read(self) -> str:
        if not os.path.exists(self.path):
            return ""
        with open(self.path, "r", encoding="utf-8") as handle:
            return handle.read()

    def lines(self) -> List[str]:
        return self.read().splitlines()
