"""Persistence for student suspensions (``suspensions.json``)."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .models import Suspension, generate_id, utc_now
from .storage import JsonListStore


class SuspensionStore:
    """At most one active suspension per student is kept."""

    def __init__(self, path: Path) -> None:
        self._store: JsonListStore[Suspension] = JsonListStore(
            path, Suspension.from_dict, Suspension.to_dict
        )

    def list(self) -> List[Suspension]:
        return self._store.load()

    def active(self) -> List[Suspension]:
        return [suspension for suspension in self.list() if suspension.is_active]

    def active_for(self, student_id: str) -> Optional[Suspension]:
        return next(
            (item for item in self.list() if item.student_id == student_id and item.is_active),
            None,
        )

    def expired(self, now: Optional[datetime] = None) -> List[Suspension]:
        """Active suspensions whose end date has passed."""

        moment = now or utc_now()
        return [suspension for suspension in self.list() if suspension.is_expired(moment)]

    def create(
        self,
        student_id: str,
        reason: str,
        end_date: datetime,
        student_name: str = "",
        student_upn: str = "",
        created_by: str = "unknown",
    ) -> Suspension:
        suspension = Suspension(
            id=generate_id("susp"),
            student_id=student_id,
            student_name=student_name,
            student_upn=student_upn,
            reason=reason,
            end_date=end_date,
            created_by=created_by,
        )

        def _create(items: List[Suspension]) -> None:
            for existing in items:
                if existing.student_id == student_id and existing.is_active:
                    existing.is_active = False
            items.append(suspension)

        self._store.mutate(_create)
        return suspension

    def lift(self, student_id: str) -> bool:
        def _lift(items: List[Suspension]) -> bool:
            found = False
            for existing in items:
                if existing.student_id == student_id and existing.is_active:
                    existing.is_active = False
                    found = True
            return found

        return self._store.mutate(_lift)


__all__ = ["SuspensionStore"]
