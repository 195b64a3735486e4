"""
Audit Logging Tool
Append-only compliance trail of every dashboard read and write:
(actor_id, case_id, action, timestamp, details).
This is not telemetry: a failed audit write fails the operation.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from django.utils import timezone

from apps.cases.models import AuditLogEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    actor_id: str
    case_id: str
    action: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


class InMemoryAuditSink:

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[AuditEvent] = []

    def write(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_case(self, case_id: str) -> List[AuditEvent]:
        with self._lock:
            return [e for e in self.events if e.case_id == case_id]


class DjangoAuditSink:

    def write(self, event: AuditEvent) -> None:
        AuditLogEntry.objects.create(
            actor_id=event.actor_id,
            case_id=event.case_id,
            action=event.action,
            timestamp=event.timestamp,
            details=event.details,
        )


class AuditLogTool:

    def __init__(self, sink=None, clock: Callable[[], datetime] = timezone.now):
        self.sink = sink if sink is not None else InMemoryAuditSink()
        self.clock = clock

    def record(self, actor_id: str, action: str, case_id: str = '',
               details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        event = AuditEvent(
            actor_id=actor_id,
            case_id=case_id or '',
            action=action,
            timestamp=self.clock(),
            details=details or {},
        )
        self.sink.write(event)
        logger.debug(f"audit: {actor_id} {action} {case_id}")
        return event
