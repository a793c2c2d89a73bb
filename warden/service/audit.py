from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes each audit event as one structured log line."""

    def __init__(self, logger_name: str = "warden.audit") -> None:
        self.logger = get_logger(logger_name)

    def record(self, event: AuditEvent) -> None:
        log = self.logger.info if event.success else self.logger.warning
        log(
            "audit_event",
            event_type=event.event_type,
            event_category=event.event_category,
            success=event.success,
            user_id=event.user_id,
            session_id=event.session_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            error_message=event.error_message,
            metadata=event.metadata,
            created_at=event.created_at.isoformat(),
        )


class AuditLogger:
    """Single emission point for authentication and authorization decisions.

    Sink failures are logged and dropped; the audited operation always
    proceeds.
    """

    def __init__(self, sink: Optional[AuditSink] = None, *, clock: Clock = utc_now) -> None:
        self.sink = sink or LoggingAuditSink()
        self.clock = clock

    def emit(
        self,
        event_type: str,
        category: str,
        *,
        success: bool,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            event_category=category,
            success=success,
            user_id=user_id,
            session_id=session_id,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        try:
            self.sink.record(event)
        except Exception as exc:
            logger.warning("audit_emit_failed", event_type=event_type, error=str(exc))


__all__ = ["AuditSink", "LoggingAuditSink", "AuditLogger"]
