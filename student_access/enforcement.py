"""Reconcile scheduled access decisions against live Entra ID account state.

These functions back the automation commands that cron runs. Each one reads
the JSON stores, walks directory state through paginated Graph calls, applies
changes one account at a time and records a summary in the audit log. A
failure on one account is logged and reported; it never aborts the batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .audit import SYSTEM_ACTOR
from .context import Stores
from .graph_client import GraphClient, GraphClientError
from .models import SchedulePolicy, SpecialGroup, utc_now
from .scheduling import AccessDecision, build_group_policy_map, resolve_student_access


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedChange:
    user_id: str
    user_principal_name: str
    enable: bool
    decision: AccessDecision


@dataclass
class EnforcementReport:
    evaluated: int = 0
    unchanged: int = 0
    skipped: int = 0
    enabled: List[str] = field(default_factory=list)
    disabled: List[str] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluated": self.evaluated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "enabled": list(self.enabled),
            "disabled": list(self.disabled),
            "failures": list(self.failures),
            "dryRun": self.dry_run,
        }


def managed_group_ids(
    policies: Iterable[SchedulePolicy], special_groups: Iterable[SpecialGroup]
) -> List[str]:
    """Groups whose members the schedule controls, in a stable order."""

    ordered: Dict[str, None] = {}
    for policy in policies:
        if policy.is_active:
            for group_id in policy.assigned_group_ids:
                ordered.setdefault(group_id, None)
    for special in special_groups:
        ordered.setdefault(special.group_id, None)
    return list(ordered)


def collect_memberships(
    client: GraphClient, group_ids: Iterable[str]
) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Set[str]]]:
    """Return ``(members by id, group ids by member id)`` for the given groups.

    A group that cannot be read raises: deciding on partial membership would
    let a student fall through to the wrong policy.
    """

    members: Dict[str, Dict[str, Any]] = {}
    memberships: Dict[str, Set[str]] = {}
    for group_id in group_ids:
        for member in client.list_group_members(group_id):
            member_id = member.get("id")
            if not member_id:
                continue
            members.setdefault(member_id, member)
            memberships.setdefault(member_id, set()).add(group_id)
    return members, memberships


def plan_changes(
    members: Mapping[str, Dict[str, Any]], decisions: Mapping[str, AccessDecision]
) -> List[PlannedChange]:
    changes: List[PlannedChange] = []
    for member_id, decision in decisions.items():
        if decision.should_enable is None:
            continue
        member = members.get(member_id) or {}
        if bool(member.get("accountEnabled")) == decision.should_enable:
            continue
        changes.append(
            PlannedChange(
                user_id=member_id,
                user_principal_name=str(member.get("userPrincipalName") or member_id),
                enable=decision.should_enable,
                decision=decision,
            )
        )
    return changes


def enforce_schedule(
    client: GraphClient,
    stores: Stores,
    now: Optional[datetime] = None,
    dry_run: bool = False,
    group_ids: Optional[Iterable[str]] = None,
    actor: Optional[str] = None,
    label: str = "Scheduled",
) -> EnforcementReport:
    """Enable or disable every managed student according to the schedule.

    ``group_ids`` narrows which students are evaluated; membership of every
    managed group is still read so overrides resolve correctly. Without an
    ``actor`` the run is audited as automation.
    """

    moment = now or utc_now()
    policies = stores.policies.list()
    special_groups = stores.special_groups.list()
    suspensions = stores.suspensions.active()

    managed = managed_group_ids(policies, special_groups)
    scope = set(group_ids) if group_ids is not None else set(managed)
    to_read = managed + [group_id for group_id in scope if group_id not in managed]
    members, memberships = collect_memberships(client, to_read)

    group_policy_map = build_group_policy_map(policies)
    decisions: Dict[str, AccessDecision] = {}
    report = EnforcementReport(dry_run=dry_run)
    for member_id, groups in memberships.items():
        if scope.isdisjoint(groups):
            continue
        report.evaluated += 1
        decision = resolve_student_access(
            member_id,
            groups,
            policies,
            special_groups,
            suspensions,
            moment,
            group_policy_map=group_policy_map,
        )
        if decision.should_enable is None:
            report.skipped += 1
        decisions[member_id] = decision

    changes = plan_changes(members, decisions)
    report.unchanged = report.evaluated - report.skipped - len(changes)
    logger.info(
        "Schedule evaluation at %s: %s students, %s changes (dry_run=%s)",
        moment.isoformat(),
        report.evaluated,
        len(changes),
        dry_run,
    )

    for change in changes:
        if dry_run:
            (report.enabled if change.enable else report.disabled).append(change.user_principal_name)
            continue
        try:
            client.set_account_enabled(change.user_id, change.enable)
        except GraphClientError as exc:
            logger.error(
                "Failed to %s %s: %s",
                "enable" if change.enable else "disable",
                change.user_principal_name,
                exc,
            )
            report.failures.append({"user": change.user_principal_name, "error": str(exc)})
            continue
        logger.info(
            "%s %s (%s)",
            "Enabled" if change.enable else "Disabled",
            change.user_principal_name,
            change.decision.reason,
        )
        (report.enabled if change.enable else report.disabled).append(change.user_principal_name)

    if not dry_run:
        _audit_enforcement(stores, report, actor, label)
    return report


def _audit_enforcement(
    stores: Stores, report: EnforcementReport, actor: Optional[str], label: str
) -> None:
    failed = len(report.failures)
    performed_by = actor or SYSTEM_ACTOR
    if report.enabled:
        stores.audit.write(
            "enable",
            performed_by,
            details=f"{label} enable: {len(report.enabled)} account(s) enabled, {failed} failure(s)",
        )
    if report.disabled:
        stores.audit.write(
            "disable",
            performed_by,
            details=f"{label} disable: {len(report.disabled)} account(s) disabled, {failed} failure(s)",
        )


def apply_policy_now(
    client: GraphClient,
    stores: Stores,
    policy: SchedulePolicy,
    now: Optional[datetime] = None,
    actor: str = "Unknown",
) -> EnforcementReport:
    """Bring the members of a freshly activated policy's groups in line immediately.

    The changes are audited under ``actor`` so they never count as a cron run.
    """

    if not policy.assigned_group_ids:
        return EnforcementReport()
    return enforce_schedule(
        client,
        stores,
        now=now,
        group_ids=policy.assigned_group_ids,
        actor=actor,
        label=f'Policy "{policy.name}" applied',
    )


def process_expired_suspensions(
    client: GraphClient, stores: Stores, now: Optional[datetime] = None
) -> List[Dict[str, str]]:
    """Re-enable students whose suspension has ended and close the records."""

    results: List[Dict[str, str]] = []
    for suspension in stores.suspensions.expired(now or utc_now()):
        try:
            client.set_account_enabled(suspension.student_id, True)
        except GraphClientError as exc:
            logger.error("Could not re-enable %s after suspension: %s", suspension.student_upn, exc)
            results.append({"studentName": suspension.student_name, "status": f"failed: {exc}"})
            continue
        stores.suspensions.lift(suspension.student_id)
        stores.audit.log_student_action(
            "student_unsuspended",
            SYSTEM_ACTOR,
            f"{suspension.student_name} ({suspension.student_upn})",
            "Suspension expired, account re-enabled",
        )
        results.append({"studentName": suspension.student_name, "status": "re-enabled"})
    return results


def apply_pending_changes(client: GraphClient, stores: Stores) -> Dict[str, int]:
    """Carry out queued group membership changes in request order."""

    completed = failed = 0
    for change in stores.pending_changes.pending():
        try:
            if change.action == "add":
                client.add_user_to_group(change.student_id, change.group_id)
            else:
                client.remove_user_from_group(change.student_id, change.group_id)
        except GraphClientError as exc:
            logger.error(
                "Pending change %s (%s %s -> %s) failed: %s",
                change.id,
                change.action,
                change.student_name,
                change.group_name,
                exc,
            )
            stores.pending_changes.mark_failed(change.id, str(exc))
            failed += 1
            continue
        stores.pending_changes.mark_completed(change.id)
        stores.audit.log_student_action(
            "group_membership_changed",
            change.requested_by,
            change.student_name,
            f"{'Added to' if change.action == 'add' else 'Removed from'} {change.group_name} ({change.reason})",
            target_group=change.group_name,
        )
        completed += 1
    return {"completed": completed, "failed": failed}


__all__ = [
    "EnforcementReport",
    "PlannedChange",
    "apply_pending_changes",
    "apply_policy_now",
    "collect_memberships",
    "enforce_schedule",
    "managed_group_ids",
    "plan_changes",
    "process_expired_suspensions",
]
