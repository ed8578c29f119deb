"""Flat-file JSON stores for policies, special groups and pending group changes."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from .models import (
    CHANGE_ACTIONS,
    PendingGroupChange,
    SchedulePolicy,
    SpecialGroup,
    default_policies,
    generate_id,
    utc_now,
)
from .errors import ValidationError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields callers may change through ``update``; everything else is managed here.
_POLICY_UPDATABLE = {
    "name",
    "description",
    "enable_time",
    "disable_time",
    "days_of_week",
    "timezone",
    "is_active",
    "assigned_group_ids",
    "assigned_group_names",
}
_SPECIAL_GROUP_UPDATABLE = {
    "group_id",
    "group_name",
    "description",
    "policy_id",
    "policy_name",
    "priority",
    "member_count",
}


class JsonListStore(Generic[T]):
    """A JSON array on disk, read wholesale and rewritten on every mutation."""

    def __init__(
        self,
        path: Path,
        loader: Callable[[Dict[str, Any]], T],
        dumper: Callable[[T], Dict[str, Any]],
    ) -> None:
        self.path = Path(path)
        self._loader = loader
        self._dumper = dumper
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Persistence                                                        #
    # ------------------------------------------------------------------ #
    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[T]:
        with self._lock:
            if not self.path.exists():
                return []
            try:
                with self.path.open("r", encoding="utf-8") as handle:
                    payload = json.load(handle) or []
            except (OSError, ValueError) as exc:
                logger.warning("Unable to read %s, treating it as empty: %s", self.path, exc)
                return []
            items: List[T] = []
            for entry in payload if isinstance(payload, list) else []:
                try:
                    items.append(self._loader(entry))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed record in %s: %s", self.path, exc)
            return items

    def save(self, items: Iterable[T]) -> None:
        with self._lock:
            payload = [self._dumper(item) for item in items]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            tmp_path.replace(self.path)

    def mutate(self, func: Callable[[List[T]], Any]) -> Any:
        """Load, apply ``func`` to the list in place, save, and return its result."""

        with self._lock:
            items = self.load()
            result = func(items)
            self.save(items)
            return result


def _apply_updates(target: Any, updates: Dict[str, Any], allowed: set[str]) -> None:
    for key, value in updates.items():
        if key not in allowed:
            raise ValidationError(f"Field '{key}' cannot be updated.")
        setattr(target, key, value)


class PolicyStore:
    """Schedule policies persisted at ``policies.json``."""

    def __init__(self, path: Path) -> None:
        self._store: JsonListStore[SchedulePolicy] = JsonListStore(
            path, SchedulePolicy.from_dict, SchedulePolicy.to_dict
        )

    @property
    def path(self) -> Path:
        return self._store.path

    def _ensure_seeded(self) -> None:
        if self._store.exists():
            return
        defaults = default_policies()
        self._store.save(defaults)
        logger.info("Seeded %s default policies into %s", len(defaults), self.path)

    def list(self) -> List[SchedulePolicy]:
        self._ensure_seeded()
        return self._store.load()

    def get(self, policy_id: str) -> Optional[SchedulePolicy]:
        return next((policy for policy in self.list() if policy.id == policy_id), None)

    def create(
        self,
        name: str,
        enable_time: str,
        disable_time: str,
        days_of_week: Iterable[str],
        description: str = "",
        timezone: Optional[str] = None,
        created_by: str = "unknown",
        is_active: bool = False,
    ) -> SchedulePolicy:
        now = utc_now()
        policy = SchedulePolicy(
            id=generate_id("policy"),
            name=(name or "").strip(),
            description=description or "",
            enable_time=enable_time,
            disable_time=disable_time,
            days_of_week=list(days_of_week or []),
            is_active=is_active,
            created_at=now,
            created_by=created_by,
            updated_at=now,
        )
        if timezone:
            policy.timezone = timezone
        policy.validate()

        self._ensure_seeded()
        self._store.mutate(lambda policies: policies.append(policy))
        return policy

    def update(self, policy_id: str, **updates: Any) -> Optional[SchedulePolicy]:
        def _update(policies: List[SchedulePolicy]) -> Optional[SchedulePolicy]:
            policy = next((item for item in policies if item.id == policy_id), None)
            if policy is None:
                return None
            _apply_updates(policy, updates, _POLICY_UPDATABLE)
            policy.validate()
            policy.updated_at = utc_now()
            return policy

        self._ensure_seeded()
        return self._store.mutate(_update)

    def delete(self, policy_id: str) -> Optional[SchedulePolicy]:
        """Remove a policy, returning the removed record."""

        def _delete(policies: List[SchedulePolicy]) -> Optional[SchedulePolicy]:
            for index, policy in enumerate(policies):
                if policy.id == policy_id:
                    return policies.pop(index)
            return None

        self._ensure_seeded()
        return self._store.mutate(_delete)


class SpecialGroupStore:
    """Override groups persisted at ``special-groups.json``."""

    def __init__(self, path: Path) -> None:
        self._store: JsonListStore[SpecialGroup] = JsonListStore(
            path, SpecialGroup.from_dict, SpecialGroup.to_dict
        )

    def list(self) -> List[SpecialGroup]:
        return self._store.load()

    def get(self, special_group_id: str) -> Optional[SpecialGroup]:
        return next((group for group in self.list() if group.id == special_group_id), None)

    def create(
        self,
        group_id: str,
        policy_id: str,
        group_name: Optional[str] = None,
        description: str = "",
        policy_name: Optional[str] = None,
        priority: Optional[int] = None,
        created_by: str = "portal",
    ) -> SpecialGroup:
        if not group_id or not policy_id:
            raise ValidationError("groupId and policyId are required")
        group = SpecialGroup(
            id=generate_id("sg"),
            group_id=group_id,
            group_name=group_name or "Unnamed Group",
            description=description or "",
            policy_id=policy_id,
            policy_name=policy_name or "Unknown",
            priority=int(priority) if priority is not None else 10,
            created_by=created_by,
        )
        self._store.mutate(lambda groups: groups.append(group))
        return group

    def update(self, special_group_id: str, **updates: Any) -> Optional[SpecialGroup]:
        def _update(groups: List[SpecialGroup]) -> Optional[SpecialGroup]:
            group = next((item for item in groups if item.id == special_group_id), None)
            if group is not None:
                _apply_updates(group, updates, _SPECIAL_GROUP_UPDATABLE)
            return group

        return self._store.mutate(_update)

    def delete(self, special_group_id: str) -> Optional[SpecialGroup]:
        """Remove an override group, returning the removed record."""

        def _delete(groups: List[SpecialGroup]) -> Optional[SpecialGroup]:
            for index, group in enumerate(groups):
                if group.id == special_group_id:
                    return groups.pop(index)
            return None

        return self._store.mutate(_delete)

    def for_groups(self, group_ids: Iterable[str]) -> List[SpecialGroup]:
        wanted = set(group_ids)
        return [group for group in self.list() if group.group_id in wanted]


class PendingChangeStore:
    """Queued membership changes persisted at ``pending-changes.json``."""

    def __init__(self, path: Path) -> None:
        self._store: JsonListStore[PendingGroupChange] = JsonListStore(
            path, PendingGroupChange.from_dict, PendingGroupChange.to_dict
        )

    def list(self) -> List[PendingGroupChange]:
        changes = self._store.load()
        changes.sort(key=lambda change: change.requested_at, reverse=True)
        return changes

    def pending(self) -> List[PendingGroupChange]:
        changes = [change for change in self._store.load() if change.status == "pending"]
        changes.sort(key=lambda change: change.requested_at)
        return changes

    def pending_count(self) -> int:
        return len(self.pending())

    def add(
        self,
        student_id: str,
        action: str,
        group_id: str,
        student_name: Optional[str] = None,
        group_name: Optional[str] = None,
        reason: str = "manual",
        requested_by: str = "portal",
    ) -> PendingGroupChange:
        if not student_id or not action or not group_id:
            raise ValidationError("studentId, action, and groupId are required")
        if action not in CHANGE_ACTIONS:
            raise ValidationError("action must be 'add' or 'remove'")
        change = PendingGroupChange(
            id=generate_id("chg"),
            student_id=student_id,
            student_name=student_name or "Unknown",
            action=action,
            group_id=group_id,
            group_name=group_name or "Unknown",
            reason=reason or "manual",
            requested_by=requested_by or "portal",
        )
        self._store.mutate(lambda changes: changes.append(change))
        return change

    def mark_completed(self, change_id: str) -> None:
        self._finish(change_id, "completed", None)

    def mark_failed(self, change_id: str, error: str) -> None:
        self._finish(change_id, "failed", error)

    def _finish(self, change_id: str, status: str, error: Optional[str]) -> None:
        def _update(changes: List[PendingGroupChange]) -> None:
            for change in changes:
                if change.id == change_id:
                    change.status = status
                    change.completed_at = utc_now()
                    change.error = error
                    return

        self._store.mutate(_update)


__all__ = ["JsonListStore", "PendingChangeStore", "PolicyStore", "SpecialGroupStore"]
