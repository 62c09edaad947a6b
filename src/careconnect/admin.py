"""Administrative helpers for CareConnect."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import AuditEvent
from .validation import utcnow


class AuditLog:
    """Collect audit events for intake and review decisions."""

    def __init__(self) -> None:
        self._entries: list[AuditEvent] = []

    def record(
        self,
        actor: str,
        action: str,
        target: str,
        *,
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor,
            action=action,
            target=target,
            timestamp=timestamp or utcnow(),
            details=dict(details or {}),
        )
        self._entries.append(event)
        return event

    def entries(
        self,
        *,
        action: str | None = None,
        target: str | None = None,
        actor: str | None = None,
    ) -> tuple[AuditEvent, ...]:
        records = self._entries
        if action is not None:
            records = [entry for entry in records if entry.action == action]
        if target is not None:
            records = [entry for entry in records if entry.target == target]
        if actor is not None:
            records = [entry for entry in records if entry.actor == actor]
        return tuple(records)

    def history(self, target: str) -> tuple[str, ...]:
        """Return the ordered actions recorded against ``target``."""

        return tuple(entry.action for entry in self._entries if entry.target == target)

    def latest(self) -> AuditEvent | None:
        return self._entries[-1] if self._entries else None


__all__ = ["AuditLog"]
