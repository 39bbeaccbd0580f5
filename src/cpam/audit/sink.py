"""Audit event sinks for CPAM.

All sinks implement the AuditSink protocol and are append-only.

Design requirements:
- Append-only: never truncate/overwrite
- Fail closed: any IO failure raises AuditSinkError
- Deterministic: sorted keys, no extra whitespace

Environment:
    CPAM_AUDIT_LOG_PATH: JSONL file for ``JsonlFileAuditSink``
        (default: ./var/audit/cpam_audit_events.jsonl).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

AUDIT_LOG_PATH_ENV = "CPAM_AUDIT_LOG_PATH"
DEFAULT_AUDIT_LOG_PATH = "./var/audit/cpam_audit_events.jsonl"


class AuditSinkError(Exception):
    """Raised when audit event emission fails."""

    pass


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for audit event sinks."""

    def emit(self, event: dict[str, Any]) -> None:
        """Emit an audit event.

        Raises:
            AuditSinkError: If emission fails for any reason
        """
        ...


def _serialize(event: dict[str, Any]) -> str:
    try:
        return json.dumps(event, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise AuditSinkError(f"Failed to serialize audit event: {e}") from e


class JsonlFileAuditSink:
    """Append-only JSONL file sink.

    One line per event; parent directories are created on first write.

    Args:
        file_path: Override path. If None, reads CPAM_AUDIT_LOG_PATH, falling
            back to DEFAULT_AUDIT_LOG_PATH.
    """

    def __init__(self, file_path: str | os.PathLike[str] | None = None) -> None:
        if file_path is not None:
            self._file_path = Path(file_path)
        else:
            self._file_path = Path(os.environ.get(AUDIT_LOG_PATH_ENV) or DEFAULT_AUDIT_LOG_PATH)
        self._lock = threading.Lock()

    @property
    def file_path(self) -> Path:
        return self._file_path

    def emit(self, event: dict[str, Any]) -> None:
        line = _serialize(event) + "\n"

        parent = self._file_path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AuditSinkError(f"Failed to create audit log directory {parent}: {e}") from e

        try:
            with self._lock, open(self._file_path, mode="a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise AuditSinkError(f"Failed to write audit event to {self._file_path}: {e}") from e


class InMemoryAuditSink:
    """In-memory audit sink for tests and local runs."""

    def __init__(self) -> None:
        self._events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def emit(self, event: dict[str, Any]) -> None:
        # Round-trip through JSON so stored events match what a file sink writes.
        payload = json.loads(_serialize(event))
        with self._lock:
            self._events.append(payload)

    @property
    def events(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def events_of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e.get("event_type") == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def get_audit_sink() -> AuditSink:
    """JSONL file sink configured from the environment."""
    return JsonlFileAuditSink()
