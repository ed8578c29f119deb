"""Audit log of administrative and automation actions (``audit-log.json``)."""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from .models import AUDIT_ACTIONS, AuditLogEntry, generate_id, utc_now
from .errors import ValidationError
from .storage import JsonListStore


MAX_ENTRIES = 1000
DEFAULT_QUERY_LIMIT = 100
SYSTEM_ACTOR = "SYSTEM (automation)"


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle.lower() in haystack.lower()


class AuditLog:
    """Newest-first log trimmed to the most recent ``max_entries`` records."""

    def __init__(self, path: Path, max_entries: int = MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._store: JsonListStore[AuditLogEntry] = JsonListStore(
            path, AuditLogEntry.from_dict, AuditLogEntry.to_dict
        )

    def entries(self) -> List[AuditLogEntry]:
        return self._store.load()

    def write(
        self,
        action: str,
        performed_by: str,
        target_user: Optional[str] = None,
        target_group: Optional[str] = None,
        details: Optional[str] = None,
    ) -> AuditLogEntry:
        if action not in AUDIT_ACTIONS:
            raise ValidationError(f"Unknown audit action: '{action}'.")
        entry = AuditLogEntry(
            id=generate_id("audit"),
            action=action,
            performed_by=performed_by or "Unknown",
            target_user=target_user,
            target_group=target_group,
            details=details,
        )

        def _write(items: List[AuditLogEntry]) -> None:
            items.insert(0, entry)
            items.sort(key=lambda item: item.timestamp, reverse=True)
            del items[self.max_entries :]

        self._store.mutate(_write)
        return entry

    def query(
        self,
        action: Optional[str] = None,
        performed_by: Optional[str] = None,
        target_user: Optional[str] = None,
        target_group: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[AuditLogEntry]:
        entries = self.entries()
        if action:
            entries = [entry for entry in entries if entry.action == action]
        if performed_by:
            entries = [entry for entry in entries if _contains(entry.performed_by, performed_by)]
        if target_user:
            entries = [entry for entry in entries if _contains(entry.target_user, target_user)]
        if target_group:
            entries = [entry for entry in entries if _contains(entry.target_group, target_group)]
        if since:
            entries = [entry for entry in entries if entry.timestamp >= since]
        if until:
            entries = [entry for entry in entries if entry.timestamp <= until]
        return entries[: max(0, limit)]

    def summary(self, since_days: int = 7, now: Optional[datetime] = None) -> Dict[str, int]:
        cutoff = (now or utc_now()) - timedelta(days=since_days)
        return dict(Counter(entry.action for entry in self.entries() if entry.timestamp >= cutoff))

    def last_run(self, action: str) -> Optional[datetime]:
        """Timestamp of the most recent automation entry for ``action``."""

        for entry in self.entries():
            if entry.action == action and entry.performed_by == SYSTEM_ACTOR:
                return entry.timestamp
        return None

    # ------------------------------------------------------------------ #
    # Convenience writers                                                #
    # ------------------------------------------------------------------ #
    def log_student_action(
        self,
        action: str,
        performed_by: str,
        target_user: str,
        details: Optional[str] = None,
        target_group: Optional[str] = None,
    ) -> AuditLogEntry:
        return self.write(action, performed_by, target_user, target_group, details)

    def log_policy_action(
        self,
        action: str,
        performed_by: str,
        details: str,
        target_group: Optional[str] = None,
    ) -> AuditLogEntry:
        return self.write(action, performed_by, target_group=target_group, details=details)

    def log_system_action(
        self, action: str, details: str, target_group: Optional[str] = None
    ) -> AuditLogEntry:
        return self.write(action, SYSTEM_ACTOR, target_group=target_group, details=details)


__all__ = ["AuditLog", "MAX_ENTRIES", "SYSTEM_ACTOR"]
