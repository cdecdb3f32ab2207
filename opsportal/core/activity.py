"""
Activity log for the portal platform.

An append-only, capacity-bounded record of authorization decisions and data
mutations, used for audit. When the ring is full the oldest entry is evicted;
a single overflow warning is logged per overflow episode, and the episode only
ends once the log drops back below capacity.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

logger = logging.getLogger(__name__)

Outcome = Literal["allowed", "denied", "success", "failure"]


@dataclass(frozen=True)
class ActivityEntry:
    """
    One audit record.

    Entries are immutable once appended.
    """

    action: str  # e.g., "task.completed", "authz.write_task"
    actor_id: str | None
    outcome: Outcome = "success"

    # Target reference
    target_kind: str | None = None
    target_id: str | None = None
    project_id: str | None = None

    actor_name: str | None = None
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Serialize entry to dictionary."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "outcome": self.outcome,
            "target_kind": self.target_kind,
            "target_id": self.target_id,
            "project_id": self.project_id,
            "reason": self.reason,
            "details": self.details,
        }


class ActivityLog:
    """
    In-memory ring buffer of activity entries.

    Appends may come from any request handler; the check-evict-insert step
    runs under one lock so concurrent appends can never overshoot capacity or
    double-report an overflow.
    """

    def __init__(self, capacity: int = 2000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: deque[ActivityEntry] = deque()
        self._lock = threading.Lock()
        self._overflowing = False
        self.overflow_episodes = 0
        self.evicted_total = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def overflowing(self) -> bool:
        return self._overflowing

    def append(self, entry: ActivityEntry) -> ActivityEntry:
        """Append an entry, evicting the oldest one when at capacity."""
        warn = False
        with self._lock:
            if len(self._entries) >= self.capacity:
                self._entries.popleft()
                self.evicted_total += 1
                if not self._overflowing:
                    self._overflowing = True
                    self.overflow_episodes += 1
                    warn = True
            self._entries.append(entry)

        if warn:
            logger.warning(
                "Activity log reached capacity (%d entries); evicting oldest entries",
                self.capacity,
            )
        return entry

    def record(self, action: str, actor_id: str | None, **kwargs: Any) -> ActivityEntry:
        """Convenience wrapper building the entry in place."""
        return self.append(ActivityEntry(action=action, actor_id=actor_id, **kwargs))

    def clear(self) -> None:
        """Drop every entry. Ends the current overflow episode."""
        with self._lock:
            self._entries.clear()
            self._overflowing = False

    def get_history(
        self,
        action: str | None = None,
        project_id: str | None = None,
        project_ids: set[str] | None = None,
        actor_id: str | None = None,
        limit: int = 100,
    ) -> list[ActivityEntry]:
        """Query entries, newest first, with optional filters."""
        with self._lock:
            results = list(self._entries)

        if action:
            results = [e for e in results if fnmatch.fnmatch(e.action, action)]

        if project_id:
            results = [e for e in results if e.project_id == project_id]

        if project_ids is not None:
            results = [e for e in results if e.project_id in project_ids]

        if actor_id:
            results = [e for e in results if e.actor_id == actor_id]

        results.reverse()
        return results[:limit]


# Singleton activity log for the application
_default_log: ActivityLog | None = None


def get_activity_log() -> ActivityLog:
    """Get the default activity log instance."""
    global _default_log
    if _default_log is None:
        from opsportal.config import get_settings

        _default_log = ActivityLog(capacity=get_settings().activity_log_max_entries)
    return _default_log


def reset_activity_log() -> None:
    """Reset the default activity log (useful for testing)."""
    global _default_log
    _default_log = None
