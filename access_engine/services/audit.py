"""
Audit event emission.

The engine writes audit events and never reads them back. Emission is
best-effort: a failing sink is logged loudly but never undoes the mutation
that was already committed.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
import json
import logging
from typing import Any, Protocol

from access_engine.db.session import SessionFactory
from access_engine.models.security import AuditEventRecord
from access_engine.security.context import utcnow

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class AuditEvent:
    action: str
    actor_id: int | None
    target_id: str | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    timestamp: datetime = dataclasses.field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "actor_id": self.actor_id,
            "target_id": self.target_id,
            "before": self.before,
            "after": self.after,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class SqlAuditSink:
    """Appends events to the ``audit_events`` table in a session of its own."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def emit(self, event: AuditEvent) -> None:
        with self._session_factory() as db, db.begin():
            db.add(
                AuditEventRecord(
                    action=event.action,
                    actor_id=event.actor_id,
                    target_id=event.target_id,
                    before=_jsonable(event.before),
                    after=_jsonable(event.after),
                    created_at=event.timestamp,
                )
            )


def _jsonable(value: dict[str, Any] | None) -> dict[str, Any] | None:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def emit_best_effort(sink: AuditSink | None, event: AuditEvent) -> bool:
    """Send ``event`` to ``sink``; return False (and log) instead of raising on failure."""

    if sink is None:
        logger.debug("No audit sink configured; dropping event %s", event.to_json_line())
        return False
    try:
        sink.emit(event)
    except Exception:
        logger.exception("Audit emission failed action=%s target=%s event=%s", event.action, event.target_id, event.to_json_line())
        return False
    return True
