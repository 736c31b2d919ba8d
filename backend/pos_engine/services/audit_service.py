# Overview: Best-effort audit hook invoked after each committed mutation.

"""
Audit hand-off.

The engine does not store audit history. After a mutation commits it hands
(actor, action, entity, before/after snapshot) to a sink supplied by the
host application. A failing sink is logged and otherwise ignored: the
business transaction has already committed and must stay committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    actor_id: int
    action: str
    entity_type: str
    entity_id: int
    before: dict | None = None
    after: dict | None = None
    occurred_at: Any = field(default_factory=utcnow)


AuditSink = Callable[[AuditEvent], None]


def logging_sink(event: AuditEvent) -> None:
    """Default sink: one structured log record per event."""
    logger.info(
        "%s %s:%s by user %s",
        event.action,
        event.entity_type,
        event.entity_id,
        event.actor_id,
        extra={
            "audit_action": event.action,
            "audit_entity_type": event.entity_type,
            "audit_entity_id": event.entity_id,
            "audit_actor_id": event.actor_id,
        },
    )


class AuditLogger:
    def __init__(self, sink: AuditSink | None = None):
        self.sink = sink or logging_sink

    def record(
        self,
        actor_id: int,
        action: str,
        entity_type: str,
        entity_id: int,
        *,
        before: dict | None = None,
        after: dict | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
        )
        try:
            self.sink(event)
        except Exception:
            logger.exception("Audit sink failed for %s %s:%s", action, entity_type, entity_id)
        return event
