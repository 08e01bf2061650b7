from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from tenantguard.logging import get_logger
from tenantguard.storage.models import utcnow

logger = get_logger(__name__)


class AuditCategory(str, Enum):
    AUTH = "AUTH"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    ACCESS = "ACCESS"
    RATE_LIMIT = "RATE_LIMIT"


@dataclass
class AuditEvent:
    event_type: str
    category: AuditCategory
    success: bool
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    error: Optional[str] = None
    token_type: Optional[str] = None
    token_id: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def severity(self) -> str:
        return "DEFAULT" if self.success else "WARNING"


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class StructlogAuditSink:
    """Writes one structured log record per security event."""

    def __init__(self, logger_name: str = "tenantguard.audit") -> None:
        self.logger = get_logger(logger_name)

    def emit(self, event: AuditEvent) -> None:
        fields = asdict(event)
        fields["category"] = event.category.value
        fields["timestamp"] = event.timestamp.isoformat()
        fields["severity"] = event.severity
        event_name = fields.pop("event_type")
        if event.success:
            self.logger.info(event_name, **fields)
        else:
            self.logger.warning(event_name, **fields)


class AuditTrail:
    """Fire-and-forget front for an ``AuditSink``.

    A failing sink is logged and swallowed so it never changes the outcome
    of the flow that produced the event.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(self, event: AuditEvent) -> None:
        try:
            self.sink.emit(event)
        except Exception as exc:
            logger.error(
                "audit_sink_failed",
                event_type=event.event_type,
                error=str(exc),
            )


__all__ = [
    "AuditCategory",
    "AuditEvent",
    "AuditSink",
    "AuditTrail",
    "StructlogAuditSink",
]
