"""Audit event construction and best-effort emission for CPAM services."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from cpam.audit.sink import AuditSink

logger = logging.getLogger(__name__)


def build_audit_event(
    *,
    tenant_id: str,
    event_type: str,
    resource_type: str,
    resource_id: str,
    actor_id: str,
    severity: str = "MEDIUM",
    details: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> dict[str, Any]:
    """Build an audit event dict.

    Args:
        tenant_id: Owning tenant.
        event_type: Dotted event name, e.g. ``batch.completed``.
        resource_type: ``batch`` or ``proposal``.
        resource_id: Id of the affected resource.
        actor_id: User or service that caused the event.
        severity: LOW, MEDIUM or HIGH.
        details: JSON-serializable event details.
        occurred_at: Event time; now when omitted.
    """
    when = occurred_at or datetime.now(UTC)
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "occurred_at": when.isoformat().replace("+00:00", "Z"),
        "tenant_id": tenant_id,
        "event_type": event_type,
        "severity": severity,
        "resource": {"resource_type": resource_type, "resource_id": resource_id},
        "actor": {"actor_id": actor_id},
        "summary": f"{event_type} for {resource_type} {resource_id}",
        "payload": {"refs": [f"{resource_type}_id:{resource_id}"]},
    }
    if details:
        event["payload"]["details"] = details
    return event


def emit_audit_event(sink: AuditSink, event: dict[str, Any]) -> None:
    """Emit an event, logging instead of raising if the sink fails."""
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning("Failed to emit audit event %s: %s", event.get("event_type"), e)
