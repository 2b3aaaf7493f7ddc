"""Audit trail of sync request outcomes."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence

from .store import EntityStore, StoreSession
from .versioning import wall_clock_ms

DEFAULT_AUDIT_RETENTION = 50

audit_logger = logging.getLogger("storysync.audit")


@dataclass(frozen=True)
class AuditEvent:
    """Outcome of one request, e.g. ``("project.save", "conflict", {...})``."""

    owner_id: str
    action: str
    status: str
    detail: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditEntry:
    id: int
    action: str
    status: str
    detail: Dict[str, Any] | None
    created_at: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "status": self.status,
            "detail": self.detail,
            "createdAt": self.created_at,
        }


class AuditSink(Protocol):
    """Receives an event after every request outcome."""

    async def record(self, event: AuditEvent) -> None:
        """Persist or forward ``event``."""


class StoreAuditSink:
    """Write audit events to the entity store, keeping the newest entries."""

    def __init__(
        self,
        store: EntityStore,
        *,
        retention: int = DEFAULT_AUDIT_RETENTION,
        clock: Callable[[], int] | None = None,
    ) -> None:
        if retention < 1:
            raise ValueError("retention must be a positive integer")
        self._store = store
        self._retention = retention
        self._clock = clock or wall_clock_ms

    async def record(self, event: AuditEvent) -> None:
        async with self._store.session() as session:
            await session.append_audit(
                event.owner_id,
                action=event.action,
                status=event.status,
                detail=json.dumps(dict(event.detail), ensure_ascii=False, default=str),
                created_at=int(self._clock()),
            )
            await session.prune_audit(event.owner_id, keep=self._retention)


class LoggingAuditSink:
    """Forward audit events to the ``storysync.audit`` logger."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or audit_logger

    async def record(self, event: AuditEvent) -> None:
        self._logger.info(
            "%s %s owner=%s detail=%s",
            event.action,
            event.status,
            event.owner_id,
            json.dumps(dict(event.detail), ensure_ascii=False, default=str),
        )


class CompositeAuditSink:
    """Send each event to several sinks in order."""

    def __init__(self, sinks: Sequence[AuditSink]) -> None:
        self._sinks = list(sinks)

    async def record(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            await sink.record(event)


async def read_audit(
    session: StoreSession, owner_id: str, *, limit: int = DEFAULT_AUDIT_RETENTION
) -> List[AuditEntry]:
    """Return the newest audit entries for ``owner_id``."""

    entries = []
    for record in await session.list_audit(owner_id, limit=limit):
        try:
            detail = json.loads(record.detail)
        except json.JSONDecodeError:
            detail = None
        entries.append(
            AuditEntry(
                id=record.id,
                action=record.action,
                status=record.status,
                detail=detail,
                created_at=record.created_at,
            )
        )
    return entries


__all__ = [
    "DEFAULT_AUDIT_RETENTION",
    "AuditEntry",
    "AuditEvent",
    "AuditSink",
    "CompositeAuditSink",
    "LoggingAuditSink",
    "StoreAuditSink",
    "read_audit",
]
