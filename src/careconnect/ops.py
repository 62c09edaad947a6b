"""Operational utilities for CareConnect."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from .models import ActivitySubmission, FundingSubmission, PaymentProof, SubmissionStatus
from .validation import utcnow

if TYPE_CHECKING:  # pragma: no cover
    from .store import RecordStore


class StructuredLogger:
    """Write JSON lines log entries for reviewer and operator inspection."""

    def __init__(self, *, path: Path | str | None = None, keep: int = 1000) -> None:
        self.path = Path(path) if path else None
        self._keep = keep
        self._entries: list[dict] = []

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": utcnow().isoformat(), "event": event_type, **fields}
        self._entries.append(entry)
        if len(self._entries) > self._keep:
            del self._entries[: len(self._entries) - self._keep]
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        return tuple(self._entries[-limit:])

    def events(self, event_type: str) -> tuple[dict, ...]:
        return tuple(entry for entry in self._entries if entry["event"] == event_type)


class HealthMonitor:
    """Aggregate runtime health information for the status endpoint."""

    def __init__(self, store: "RecordStore") -> None:
        self._store = store
        self.last_checked: Optional[str] = None

    def pending_counts(self) -> Dict[str, int]:
        pending = SubmissionStatus.PENDING
        return {
            "funding": len(self._store.filter(FundingSubmission, status=pending)),
            "activity": len(self._store.filter(ActivitySubmission, status=pending)),
            "proof": len(self._store.filter(PaymentProof, status=pending)),
        }

    def status(self) -> dict:
        self.last_checked = utcnow().isoformat()
        try:
            pending = self.pending_counts()
        except Exception as exc:  # storage outages are reported, not raised
            return {
                "database": "down",
                "error": type(exc).__name__,
                "checked_at": self.last_checked,
            }
        return {"database": "ok", "pending": pending, "checked_at": self.last_checked}


__all__ = ["HealthMonitor", "StructuredLogger"]
