"""Resolve whether a group or student should currently have account access.

Everything here is pure: callers pass the policies, overrides, suspensions and
the instant to evaluate, and get back an :class:`AccessDecision`.

Precedence for a student, highest first:

1. an active, unexpired suspension disables the account;
2. the highest-priority special group the student belongs to, provided its
   policy exists and is active;
3. the policies of the student's regular groups; access is granted when any
   of those windows is open;
4. otherwise the student is unmanaged and no change should be made.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError
from .models import WEEKDAYS, SchedulePolicy, SpecialGroup, Suspension, is_valid_time


logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
_LAST_MINUTE = MINUTES_PER_DAY - 1

# Windows zone names (as used by Entra ID and Azure Automation) to IANA zones.
WINDOWS_TIMEZONES = {
    "UTC": "UTC",
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "W. Europe Standard Time": "Europe/Berlin",
    "Romance Standard Time": "Europe/Paris",
    "Central Europe Standard Time": "Europe/Budapest",
    "Central European Standard Time": "Europe/Warsaw",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Helsinki",
    "GTB Standard Time": "Europe/Bucharest",
    "Turkey Standard Time": "Europe/Istanbul",
    "Russian Standard Time": "Europe/Moscow",
    "Israel Standard Time": "Asia/Jerusalem",
    "South Africa Standard Time": "Africa/Johannesburg",
    "Arabian Standard Time": "Asia/Dubai",
    "India Standard Time": "Asia/Kolkata",
    "China Standard Time": "Asia/Shanghai",
    "Singapore Standard Time": "Asia/Singapore",
    "Tokyo Standard Time": "Asia/Tokyo",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "New Zealand Standard Time": "Pacific/Auckland",
    "Atlantic Standard Time": "America/Halifax",
    "Eastern Standard Time": "America/New_York",
    "Central Standard Time": "America/Chicago",
    "Mountain Standard Time": "America/Denver",
    "Pacific Standard Time": "America/Los_Angeles",
    "Alaskan Standard Time": "America/Anchorage",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "E. South America Standard Time": "America/Sao_Paulo",
}


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of resolving access; ``should_enable`` is ``None`` when unmanaged."""

    should_enable: Optional[bool]
    source: str  # suspension, special_group, group_policy, unmanaged
    reason: str
    policy_id: Optional[str] = None
    policy_name: Optional[str] = None
    special_group_id: Optional[str] = None
    suspension_id: Optional[str] = None

    @property
    def managed(self) -> bool:
        return self.should_enable is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shouldEnable": self.should_enable,
            "source": self.source,
            "reason": self.reason,
            "policyId": self.policy_id,
            "policyName": self.policy_name,
            "specialGroupId": self.special_group_id,
            "suspensionId": self.suspension_id,
        }


UNMANAGED = AccessDecision(
    should_enable=None,
    source="unmanaged",
    reason="No active policy applies.",
)


def parse_time(value: str) -> int:
    """Return minutes past midnight for an ``HH:mm`` string."""

    if not is_valid_time(value):
        raise ValidationError(f"Invalid time '{value}'. Use HH:mm (e.g. 07:55)")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


@lru_cache(maxsize=64)
def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Map a Windows or IANA zone name to a ``tzinfo``; unknown names fall back to UTC."""

    if not name:
        return timezone.utc
    candidate = WINDOWS_TIMEZONES.get(name.strip(), name.strip())
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone '%s'; evaluating the policy in UTC.", name)
        return timezone.utc


def policy_window_open(policy: SchedulePolicy, now: datetime) -> bool:
    """Whether ``now`` falls inside the policy's enable window.

    Windows are half-open ``[enableTime, disableTime)`` in the policy's zone.
    A ``disableTime`` of 23:59 covers the whole last minute of the day. When
    ``disableTime`` is before ``enableTime`` the window runs past midnight and
    the early-morning part belongs to the previous listed day.
    """

    try:
        start = parse_time(policy.enable_time)
        end = parse_time(policy.disable_time)
    except ValidationError as exc:
        logger.warning("Policy %s has an invalid window: %s", policy.id, exc)
        return False
    if end == _LAST_MINUTE:
        end = MINUTES_PER_DAY

    local = now.astimezone(resolve_timezone(policy.timezone))
    minute = local.hour * 60 + local.minute
    days = set(policy.days_of_week)
    today = WEEKDAYS[local.weekday()]
    yesterday = WEEKDAYS[(local.weekday() - 1) % 7]

    if start < end:
        return today in days and start <= minute < end
    if start > end:
        return (today in days and minute >= start) or (yesterday in days and minute < end)
    return False


def build_group_policy_map(policies: Iterable[SchedulePolicy]) -> Dict[str, SchedulePolicy]:
    """Map group id to its effective policy; later active policies win."""

    mapping: Dict[str, SchedulePolicy] = {}
    for policy in policies:
        if not policy.is_active:
            continue
        for group_id in policy.assigned_group_ids:
            mapping[group_id] = policy
    return mapping


def policies_for_group(group_id: str, policies: Iterable[SchedulePolicy]) -> List[SchedulePolicy]:
    return [
        policy
        for policy in policies
        if policy.is_active and group_id in policy.assigned_group_ids
    ]


def resolve_group_policy(
    group_id: str, policies: Iterable[SchedulePolicy]
) -> Optional[SchedulePolicy]:
    return build_group_policy_map(policies).get(group_id)


def _policy_decision(policy: SchedulePolicy, now: datetime, source: str, **extra: Any) -> AccessDecision:
    open_now = policy_window_open(policy, now)
    state = "open" if open_now else "closed"
    return AccessDecision(
        should_enable=open_now,
        source=source,
        reason=f"Policy '{policy.name}' window {policy.enable_time}-{policy.disable_time} is {state}.",
        policy_id=policy.id,
        policy_name=policy.name,
        **extra,
    )


def resolve_group_access(
    group_id: str, policies: Iterable[SchedulePolicy], now: datetime
) -> AccessDecision:
    policy = resolve_group_policy(group_id, policies)
    if policy is None:
        return UNMANAGED
    return _policy_decision(policy, now, "group_policy")


def blocking_suspension(
    student_id: str, suspensions: Iterable[Suspension], now: datetime
) -> Optional[Suspension]:
    """The student's active suspension, unless its end date has already passed."""

    for suspension in suspensions:
        if suspension.student_id == student_id and suspension.is_active and suspension.end_date > now:
            return suspension
    return None


def winning_special_group(
    group_ids: Iterable[str],
    special_groups: Sequence[SpecialGroup],
    policies_by_id: Dict[str, SchedulePolicy],
) -> Optional[SpecialGroup]:
    """Highest-priority override among the student's groups; ties go to the earliest."""

    memberships = set(group_ids)
    candidates = [
        special
        for special in special_groups
        if special.group_id in memberships
        and special.policy_id in policies_by_id
        and policies_by_id[special.policy_id].is_active
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda special: special.priority)


def resolve_student_access(
    student_id: str,
    group_ids: Iterable[str],
    policies: Sequence[SchedulePolicy],
    special_groups: Sequence[SpecialGroup],
    suspensions: Iterable[Suspension],
    now: datetime,
    group_policy_map: Optional[Dict[str, SchedulePolicy]] = None,
) -> AccessDecision:
    suspension = blocking_suspension(student_id, suspensions, now)
    if suspension is not None:
        return AccessDecision(
            should_enable=False,
            source="suspension",
            reason=f"Suspended until {suspension.end_date.isoformat()}: {suspension.reason}",
            suspension_id=suspension.id,
        )

    group_ids = list(group_ids)
    policies_by_id = {policy.id: policy for policy in policies}
    special = winning_special_group(group_ids, special_groups, policies_by_id)
    if special is not None:
        return _policy_decision(
            policies_by_id[special.policy_id],
            now,
            "special_group",
            special_group_id=special.id,
        )

    mapping = group_policy_map if group_policy_map is not None else build_group_policy_map(policies)
    applicable: List[SchedulePolicy] = []
    for group_id in group_ids:
        policy = mapping.get(group_id)
        if policy is not None and policy not in applicable:
            applicable.append(policy)
    if not applicable:
        return UNMANAGED

    for policy in applicable:
        if policy_window_open(policy, now):
            return _policy_decision(policy, now, "group_policy")
    return _policy_decision(applicable[0], now, "group_policy")


__all__ = [
    "AccessDecision",
    "UNMANAGED",
    "WINDOWS_TIMEZONES",
    "blocking_suspension",
    "build_group_policy_map",
    "parse_time",
    "policies_for_group",
    "policy_window_open",
    "resolve_group_access",
    "resolve_group_policy",
    "resolve_student_access",
    "resolve_timezone",
    "winning_special_group",
]
