# Overview: Best-effort audit trail emitted after an orchestrator commits.

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from flask import current_app

from ..extensions import db
from ..models import AuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    user_id: Optional[int]
    org_id: int
    action: str
    entity_type: str
    entity_id: Optional[int]
    changes: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None


class LoggingAuditSink:
    """Writes one structured log line per event."""

    def record(self, event: AuditEvent) -> None:
        logger.info("audit %s", asdict(event))


class DatabaseAuditSink:
    """Persists events as AuditLog rows in their own transaction."""

    def record(self, event: AuditEvent) -> None:
        db.session.add(AuditLog(
            org_id=event.org_id,
            user_id=event.user_id,
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            changes=event.changes or None,
            ip_address=event.ip_address,
        ))
        db.session.commit()


def build_audit_sink(kind: str):
    if kind == "log":
        return LoggingAuditSink()
    if kind == "database":
        return DatabaseAuditSink()
    raise ValueError(f"Unknown AUDIT_SINK: {kind}")


def emit_audit(event: AuditEvent) -> None:
    """
    Hand a committed operation to the configured sink.

    Never raises: the business transaction has already committed and must
    not be reported as failed because its audit record could not be written.
    """
    try:
        sink = current_app.extensions.get("audit_sink") or LoggingAuditSink()
        sink.record(event)
    except Exception:
        logger.exception("Failed to record audit event %s for %s %s", event.action, event.entity_type, event.entity_id)
        db.session.rollback()
