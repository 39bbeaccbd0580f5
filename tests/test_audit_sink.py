"""Tests for audit sinks and event construction.

Tests verify:
- JSONL sink appends one sorted-key line per event and creates parent dirs
- IO and serialization failures raise AuditSinkError
- Emission through emit_audit_event never raises
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from cpam.audit.events import build_audit_event, emit_audit_event
from cpam.audit.sink import (
    AUDIT_LOG_PATH_ENV,
    AuditSink,
    AuditSinkError,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    get_audit_sink,
)
from tests.fixtures.builders import TENANT_ID


def _event(**overrides: Any) -> dict[str, Any]:
    event = build_audit_event(
        tenant_id=TENANT_ID,
        event_type="batch.created",
        resource_type="batch",
        resource_id="batch-1",
        actor_id="cpam-batch-orchestrator",
        details={"formula_id": "formula-1"},
        occurred_at=datetime(2024, 2, 1, 9, 0, tzinfo=UTC),
    )
    event.update(overrides)
    return event


class TestBuildAuditEvent:
    """Event shape."""

    def test_fields(self) -> None:
        event = _event()

        assert event["occurred_at"] == "2024-02-01T09:00:00Z"
        assert event["resource"] == {"resource_type": "batch", "resource_id": "batch-1"}
        assert event["payload"]["refs"] == ["batch_id:batch-1"]
        assert event["payload"]["details"] == {"formula_id": "formula-1"}
        assert event["severity"] == "MEDIUM"

    def test_event_ids_unique(self) -> None:
        assert _event()["event_id"] != _event()["event_id"]


class TestJsonlFileAuditSink:
    """Append-only file sink."""

    def test_appends_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "audit.jsonl"
        sink = JsonlFileAuditSink(path)

        sink.emit(_event())
        sink.emit(_event(event_type="batch.completed"))

        lines = path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["event_type"] for line in lines] == [
            "batch.created",
            "batch.completed",
        ]
        assert lines[0] == json.dumps(json.loads(lines[0]), sort_keys=True, separators=(",", ":"))

    def test_path_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(AUDIT_LOG_PATH_ENV, str(tmp_path / "env.jsonl"))
        sink = get_audit_sink()
        assert isinstance(sink, JsonlFileAuditSink)
        assert sink.file_path == tmp_path / "env.jsonl"

    def test_unserializable_event(self, tmp_path: Path) -> None:
        sink = JsonlFileAuditSink(tmp_path / "audit.jsonl")
        with pytest.raises(AuditSinkError):
            sink.emit(_event(extra=object()))

    def test_unwritable_path(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        sink = JsonlFileAuditSink(blocker / "audit.jsonl")
        with pytest.raises(AuditSinkError):
            sink.emit(_event())


class TestEmitAuditEvent:
    """Best-effort emission."""

    def test_in_memory_sink_is_audit_sink(self) -> None:
        sink = InMemoryAuditSink()
        assert isinstance(sink, AuditSink)
        emit_audit_event(sink, _event())
        assert len(sink.events_of_type("batch.created")) == 1
        sink.clear()
        assert sink.events == []

    def test_failure_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        class Broken:
            def emit(self, event: dict[str, Any]) -> None:
                raise AuditSinkError("disk full")

        emit_audit_event(Broken(), _event())

        assert "Failed to emit audit event batch.created" in caplog.text
