"""CPAM audit - append-only audit event sinks."""

from cpam.audit.events import build_audit_event, emit_audit_event
from cpam.audit.sink import (
    AUDIT_LOG_PATH_ENV,
    AuditSink,
    AuditSinkError,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    get_audit_sink,
)

__all__ = [
    "AUDIT_LOG_PATH_ENV",
    "AuditSink",
    "AuditSinkError",
    "InMemoryAuditSink",
    "JsonlFileAuditSink",
    "build_audit_event",
    "emit_audit_event",
    "get_audit_sink",
]
