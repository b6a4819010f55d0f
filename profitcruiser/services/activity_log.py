from typing import Any

from .defaults import create_activity_entry
from .state_store import StateStore


class ActivityLog:
    """Append-only audit trail kept in the ``activityLog`` collection.

    Appends only touch the in-memory document; the caller persists.
    """

    def __init__(self, store: StateStore):
        self.store = store

    def append(self, message: str) -> dict[str, Any]:
        entry = create_activity_entry(message)
        self.store.state.setdefault("activityLog", []).append(entry)
        return entry

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        entries = self.store.state.get("activityLog", [])
        return list(reversed(entries[-limit:])) if limit > 0 else []

    def last_timestamp(self):
        entries = self.store.state.get("activityLog", [])
        return entries[-1].get("timestamp") if entries else None
