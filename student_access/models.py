"""Data models for schedule policies, overrides, suspensions and audit entries.

Models are persisted as JSON with camelCase keys, which is the on-disk format
shared with the automation runbooks.
"""
from __future__ import annotations

import logging
import random
import re
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .errors import ValidationError


WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
SCHOOL_DAYS = WEEKDAYS[:5]
DEFAULT_TIMEZONE = "W. Europe Standard Time"
DEFAULT_SPECIAL_GROUP_PRIORITY = 10

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = frozenset(
    {
        "enable",
        "disable",
        "manual_toggle",
        "policy_created",
        "policy_deleted",
        "policy_assigned",
        "policy_updated",
        "student_suspended",
        "student_unsuspended",
        "student_transferred",
        "student_created",
        "student_removed",
        "bulk_promote",
        "special_group_added",
        "special_group_removed",
        "group_membership_changed",
        "staff_onboarded",
        "staff_offboarded",
    }
)
CHANGE_ACTIONS = ("add", "remove")
CHANGE_STATUSES = ("pending", "completed", "failed")

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_DAY_LOOKUP = {day.lower(): day for day in WEEKDAYS}
_DAY_LOOKUP.update({day[:3].lower(): day for day in WEEKDAYS})
_ID_ALPHABET = string.ascii_lowercase + string.digits


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Return an identifier such as ``policy-1718000000000-k3j9xa``."""

    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp or date into an aware UTC ``datetime``."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def is_valid_time(value: Any) -> bool:
    return isinstance(value, str) and bool(_TIME_PATTERN.match(value))


def normalize_days(days: Iterable[Any]) -> List[str]:
    """Normalise day names to ``Monday`` .. ``Sunday``, keeping week order."""

    resolved: set[str] = set()
    for raw in days or []:
        key = str(raw or "").strip().lower()
        if not key:
            continue
        day = _DAY_LOOKUP.get(key)
        if day is None:
            raise ValidationError(f"Unknown day of week: '{raw}'.")
        resolved.add(day)
    return [day for day in WEEKDAYS if day in resolved]


def _load_days(days: Iterable[Any], policy_id: str) -> List[str]:
    """Lenient form of :func:`normalize_days` for records read from disk."""

    resolved: set[str] = set()
    for raw in days or []:
        day = _DAY_LOOKUP.get(str(raw or "").strip().lower())
        if day is None:
            logger.warning("Policy %s: ignoring unknown day of week %r", policy_id, raw)
            continue
        resolved.add(day)
    return [day for day in WEEKDAYS if day in resolved]


def _unique_preserve(values: Iterable[Any]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values or []:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def normalize_person_name(raw: str) -> str:
    stripped = (raw or "").strip()
    if not stripped:
        return ""

    def _capitalize_segment(segment: str) -> str:
        return "-".join(part.capitalize() for part in segment.split("-"))

    return " ".join(_capitalize_segment(part) for part in stripped.split())


def derive_mail_nickname(first_name: str, last_name: str) -> str:
    raw = f"{first_name.strip().lower()}.{last_name.strip().lower()}"
    return re.sub(r"[^a-z0-9.-]", "", raw)


def derive_upn(first_name: str, last_name: str, domain: str) -> str:
    raw = f"{first_name.strip().lower()}.{last_name.strip().lower()}@{domain.strip().lower()}"
    return re.sub(r"[^a-z0-9.@_-]", "", raw)


@dataclass
class SchedulePolicy:
    """A named logon-hours window applied to student groups."""

    id: str
    name: str
    enable_time: str
    disable_time: str
    days_of_week: List[str] = field(default_factory=lambda: list(SCHOOL_DAYS))
    description: str = ""
    timezone: str = DEFAULT_TIMEZONE
    is_active: bool = False
    assigned_group_ids: List[str] = field(default_factory=list)
    assigned_group_names: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    created_by: str = "system"
    updated_at: datetime = field(default_factory=utc_now)

    def validate(self) -> "SchedulePolicy":
        if not self.name.strip():
            raise ValidationError("Policy name is required.")
        if not is_valid_time(self.enable_time) or not is_valid_time(self.disable_time):
            raise ValidationError("Invalid time format. Use HH:mm (e.g. 07:55)")
        if self.enable_time == self.disable_time:
            raise ValidationError("enableTime and disableTime must differ.")
        if not self.days_of_week:
            raise ValidationError("At least one day of week is required.")
        self.days_of_week = normalize_days(self.days_of_week)
        if not self.days_of_week:
            raise ValidationError("At least one day of week is required.")
        self.assigned_group_ids = _unique_preserve(self.assigned_group_ids)
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchedulePolicy":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            enable_time=str(data.get("enableTime") or ""),
            disable_time=str(data.get("disableTime") or ""),
            days_of_week=_load_days(data.get("daysOfWeek") or [], str(data["id"])),
            timezone=str(data.get("timezone") or DEFAULT_TIMEZONE),
            is_active=bool(data.get("isActive", False)),
            assigned_group_ids=list(data.get("assignedGroupIds") or []),
            assigned_group_names=list(data.get("assignedGroupNames") or []),
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            created_by=str(data.get("createdBy") or "system"),
            updated_at=parse_datetime(data.get("updatedAt")) or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enableTime": self.enable_time,
            "disableTime": self.disable_time,
            "daysOfWeek": list(self.days_of_week),
            "timezone": self.timezone,
            "isActive": self.is_active,
            "assignedGroupIds": list(self.assigned_group_ids),
            "assignedGroupNames": list(self.assigned_group_names),
            "createdAt": format_datetime(self.created_at),
            "createdBy": self.created_by,
            "updatedAt": format_datetime(self.updated_at),
        }


@dataclass
class SpecialGroup:
    """An override group whose policy beats the members' class policies."""

    id: str
    group_id: str
    policy_id: str
    group_name: str = "Unnamed Group"
    description: str = ""
    policy_name: str = "Unknown"
    priority: int = DEFAULT_SPECIAL_GROUP_PRIORITY
    member_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    created_by: str = "portal"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpecialGroup":
        try:
            priority = int(data.get("priority", DEFAULT_SPECIAL_GROUP_PRIORITY))
        except (TypeError, ValueError):
            priority = DEFAULT_SPECIAL_GROUP_PRIORITY
        return cls(
            id=str(data["id"]),
            group_id=str(data.get("groupId") or ""),
            group_name=str(data.get("groupName") or "Unnamed Group"),
            description=str(data.get("description") or ""),
            policy_id=str(data.get("policyId") or ""),
            policy_name=str(data.get("policyName") or "Unknown"),
            priority=priority,
            member_count=int(data.get("memberCount") or 0),
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            created_by=str(data.get("createdBy") or "portal"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "groupId": self.group_id,
            "groupName": self.group_name,
            "description": self.description,
            "policyId": self.policy_id,
            "policyName": self.policy_name,
            "priority": self.priority,
            "memberCount": self.member_count,
            "createdAt": format_datetime(self.created_at),
            "createdBy": self.created_by,
        }


@dataclass
class Suspension:
    """A time-boxed disablement of one student account."""

    id: str
    student_id: str
    reason: str
    end_date: datetime
    student_name: str = ""
    student_upn: str = ""
    start_date: datetime = field(default_factory=utc_now)
    created_by: str = "unknown"
    created_at: datetime = field(default_factory=utc_now)
    is_active: bool = True

    def is_expired(self, now: datetime) -> bool:
        return self.is_active and self.end_date <= now

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Suspension":
        end_date = parse_datetime(data.get("endDate"))
        if end_date is None:
            raise ValueError(f"Suspension {data.get('id')} has no valid endDate.")
        return cls(
            id=str(data["id"]),
            student_id=str(data.get("studentId") or ""),
            student_name=str(data.get("studentName") or ""),
            student_upn=str(data.get("studentUPN") or ""),
            reason=str(data.get("reason") or ""),
            start_date=parse_datetime(data.get("startDate")) or utc_now(),
            end_date=end_date,
            created_by=str(data.get("createdBy") or "unknown"),
            created_at=parse_datetime(data.get("createdAt")) or utc_now(),
            is_active=bool(data.get("isActive", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "studentUPN": self.student_upn,
            "reason": self.reason,
            "startDate": format_datetime(self.start_date),
            "endDate": format_datetime(self.end_date),
            "createdBy": self.created_by,
            "createdAt": format_datetime(self.created_at),
            "isActive": self.is_active,
        }


@dataclass
class PendingGroupChange:
    """A queued membership change for the automation to carry out."""

    id: str
    student_id: str
    action: str
    group_id: str
    student_name: str = "Unknown"
    group_name: str = "Unknown"
    reason: str = "manual"
    requested_by: str = "portal"
    requested_at: datetime = field(default_factory=utc_now)
    status: str = "pending"  # pending, completed, failed
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingGroupChange":
        return cls(
            id=str(data["id"]),
            student_id=str(data.get("studentId") or ""),
            student_name=str(data.get("studentName") or "Unknown"),
            action=str(data.get("action") or ""),
            group_id=str(data.get("groupId") or ""),
            group_name=str(data.get("groupName") or "Unknown"),
            reason=str(data.get("reason") or "manual"),
            requested_by=str(data.get("requestedBy") or "portal"),
            requested_at=parse_datetime(data.get("requestedAt")) or utc_now(),
            status=str(data.get("status") or "pending"),
            completed_at=parse_datetime(data.get("completedAt")),
            error=str(data["error"]) if data.get("error") else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "action": self.action,
            "groupId": self.group_id,
            "groupName": self.group_name,
            "reason": self.reason,
            "requestedBy": self.requested_by,
            "requestedAt": format_datetime(self.requested_at),
            "status": self.status,
        }
        if self.completed_at:
            payload["completedAt"] = format_datetime(self.completed_at)
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class AuditLogEntry:
    id: str
    action: str
    performed_by: str
    timestamp: datetime = field(default_factory=utc_now)
    target_user: Optional[str] = None
    target_group: Optional[str] = None
    details: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        return cls(
            id=str(data["id"]),
            action=str(data.get("action") or ""),
            performed_by=str(data.get("performedBy") or "Unknown"),
            timestamp=parse_datetime(data.get("timestamp")) or utc_now(),
            target_user=data.get("targetUser") or None,
            target_group=data.get("targetGroup") or None,
            details=data.get("details") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "action": self.action,
            "performedBy": self.performed_by,
            "timestamp": format_datetime(self.timestamp),
        }
        if self.target_user:
            payload["targetUser"] = self.target_user
        if self.target_group:
            payload["targetGroup"] = self.target_group
        if self.details:
            payload["details"] = self.details
        return payload


def default_policies(now: Optional[datetime] = None) -> List[SchedulePolicy]:
    """Policies seeded into an empty store."""

    stamp = now or utc_now()

    def _policy(policy_id: str, name: str, description: str, enable: str, disable: str,
                days: Iterable[str], active: bool) -> SchedulePolicy:
        return SchedulePolicy(
            id=policy_id,
            name=name,
            description=description,
            enable_time=enable,
            disable_time=disable,
            days_of_week=list(days),
            is_active=active,
            created_at=stamp,
            updated_at=stamp,
        )

    return [
        _policy(
            "policy-default-school",
            "Standard School Hours",
            "Default policy for regular school days. Students enabled at 07:55, disabled at 16:05.",
            "07:55",
            "16:05",
            SCHOOL_DAYS,
            True,
        ),
        _policy(
            "policy-extended-hours",
            "Extended Hours (After-School)",
            "For students in after-school programs. Extended access until 18:00.",
            "07:55",
            "18:00",
            SCHOOL_DAYS,
            False,
        ),
        _policy(
            "policy-exam-period",
            "Exam Period (Always On)",
            "During exam periods students have 24/7 access to their accounts.",
            "00:00",
            "23:59",
            WEEKDAYS,
            False,
        ),
    ]


__all__ = [
    "AUDIT_ACTIONS",
    "AuditLogEntry",
    "CHANGE_ACTIONS",
    "PendingGroupChange",
    "SchedulePolicy",
    "SpecialGroup",
    "Suspension",
    "WEEKDAYS",
    "default_policies",
    "derive_mail_nickname",
    "derive_upn",
    "format_datetime",
    "generate_id",
    "is_valid_time",
    "normalize_days",
    "normalize_person_name",
    "parse_datetime",
    "utc_now",
]
