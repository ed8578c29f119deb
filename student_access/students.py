"""Student account operations behind the portal's ``/api/students`` routes."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .config import DirectoryConfig, GraphConfig
from .context import Stores
from .errors import ConflictError, NotFoundError, ValidationError
from .graph_client import GraphClient, GraphClientError, GraphError
from .models import (
    PendingGroupChange,
    derive_mail_nickname,
    derive_upn,
    normalize_person_name,
    parse_datetime,
    utc_now,
)
from .scheduling import AccessDecision, build_group_policy_map, resolve_student_access


logger = logging.getLogger(__name__)

STUDENT_STATUSES = ("enabled", "disabled", "suspended")
_USER_SUMMARY_SELECT = "id,displayName,userPrincipalName,accountEnabled"


def _describe(user: Mapping[str, Any]) -> str:
    return f"{user.get('displayName') or 'Unknown'} ({user.get('userPrincipalName') or user.get('id')})"


def _require_student_group(directory: DirectoryConfig) -> str:
    if not directory.student_group_id:
        raise ValidationError("directory.student_group_id is not configured.")
    return directory.student_group_id


def _is_duplicate_user(exc: GraphError) -> bool:
    return "already exists" in (exc.description or "").lower()


def temporary_password(kind: str, now: Optional[datetime] = None) -> str:
    """Initial password handed out for new accounts, e.g. ``Welcome2026!Student``."""

    return f"Welcome{(now or utc_now()).year}!{kind}"


def list_students(
    client: GraphClient,
    stores: Stores,
    directory: DirectoryConfig,
    group_id: Optional[str] = None,
    status: Optional[str] = None,
    policy_id: Optional[str] = None,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Members of the student group (or ``group_id``) with suspension and policy info."""

    if status and status not in STUDENT_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(STUDENT_STATUSES)}")
    query_group = group_id or _require_student_group(directory)

    members = client.list_group_members(query_group)
    suspensions = {item.student_id: item for item in stores.suspensions.active()}
    policies = stores.policies.list()
    applied = build_group_policy_map(policies).get(query_group)

    students: List[Dict[str, Any]] = []
    for member in members:
        suspension = suspensions.get(member["id"])
        students.append(
            {
                "id": member["id"],
                "displayName": member.get("displayName") or "",
                "userPrincipalName": member.get("userPrincipalName") or "",
                "accountEnabled": bool(member.get("accountEnabled")),
                "mail": member.get("mail"),
                "jobTitle": member.get("jobTitle"),
                "department": member.get("department"),
                "suspension": suspension.to_dict() if suspension else None,
                "appliedPolicy": applied.name if applied else None,
            }
        )

    if status == "enabled":
        students = [item for item in students if item["accountEnabled"] and not item["suspension"]]
    elif status == "disabled":
        students = [item for item in students if not item["accountEnabled"] and not item["suspension"]]
    elif status == "suspended":
        students = [item for item in students if item["suspension"]]

    if policy_id and not group_id:
        policy = next((item for item in policies if item.id == policy_id), None)
        if policy is not None:
            covered: set[str] = set()
            for assigned in policy.assigned_group_ids:
                try:
                    covered.update(member["id"] for member in client.list_group_members(assigned, select="id"))
                except GraphClientError as exc:
                    logger.warning("Could not read members of %s for policy filter: %s", assigned, exc)
            students = [item for item in students if item["id"] in covered]

    if search:
        needle = search.lower()
        students = [
            item
            for item in students
            if needle in item["displayName"].lower() or needle in item["userPrincipalName"].lower()
        ]
    return students


def get_student(client: GraphClient, student_id: str) -> Dict[str, Any]:
    user = client.get_user(
        student_id, select="id,displayName,userPrincipalName,accountEnabled,mail,jobTitle,department"
    )
    if not user:
        raise NotFoundError(f"Student {student_id} not found.")
    return user


def explain_access(
    client: GraphClient, stores: Stores, student_id: str, now: Optional[datetime] = None
) -> AccessDecision:
    """Resolve what the schedule says about one student right now."""

    group_ids = [group["id"] for group in client.get_user_groups(student_id) if group.get("id")]
    return resolve_student_access(
        student_id,
        group_ids,
        stores.policies.list(),
        stores.special_groups.list(),
        stores.suspensions.active(),
        now or utc_now(),
    )


def set_access(
    client: GraphClient, stores: Stores, student_id: str, enabled: bool, actor: str
) -> Dict[str, Any]:
    """Manually enable or disable a student account."""

    if not isinstance(enabled, bool):
        raise ValidationError("accountEnabled must be a boolean")
    if enabled and stores.suspensions.active_for(student_id):
        raise ConflictError("Student is suspended. Lift the suspension before enabling the account.")

    client.set_account_enabled(student_id, enabled)
    user = client.get_user(student_id, select=_USER_SUMMARY_SELECT)
    stores.audit.log_student_action(
        "manual_toggle",
        actor,
        _describe(user),
        f"Account {'enabled' if enabled else 'disabled'} manually",
    )
    return user


def bulk_set_access(
    client: GraphClient,
    stores: Stores,
    directory: DirectoryConfig,
    action: str,
    student_ids: Optional[Iterable[str]],
    actor: str,
) -> Dict[str, Any]:
    if action not in ("enable", "disable"):
        raise ValidationError("Invalid action. Use 'enable' or 'disable'")
    enabled = action == "enable"

    ids = [item for item in (student_ids or []) if item]
    if not ids:
        group_id = _require_student_group(directory)
        ids = [member["id"] for member in client.list_group_members(group_id, select="id")]

    suspended = {item.student_id for item in stores.suspensions.active()}
    results: List[Dict[str, Any]] = []
    for student_id in ids:
        if enabled and student_id in suspended:
            results.append({"id": student_id, "success": False, "error": "Student is suspended"})
            continue
        try:
            client.set_account_enabled(student_id, enabled)
        except GraphClientError as exc:
            logger.error("Bulk %s failed for %s: %s", action, student_id, exc)
            results.append({"id": student_id, "success": False, "error": str(exc)})
            continue
        results.append({"id": student_id, "success": True})

    succeeded = sum(1 for item in results if item["success"])
    failed = len(results) - succeeded
    stores.audit.log_student_action(
        action,
        actor,
        f"{succeeded} student(s)",
        f"Bulk {action}: {succeeded} succeeded, {failed} failed out of {len(results)}",
    )
    return {
        "action": action,
        "total": len(results),
        "succeeded": succeeded,
        "failed": failed,
        "results": results,
    }


def suspend(
    client: GraphClient,
    stores: Stores,
    student_id: str,
    reason: str,
    end_date: Any,
    actor: str,
    now: Optional[datetime] = None,
):
    """Disable a student until ``end_date`` and record the suspension."""

    if not reason or not str(reason).strip():
        raise ValidationError("reason and endDate are required")
    parsed_end = parse_datetime(end_date)
    if parsed_end is None:
        raise ValidationError("reason and endDate are required")
    if parsed_end <= (now or utc_now()):
        raise ValidationError("End date must be in the future")

    user = client.get_user(student_id, select=_USER_SUMMARY_SELECT)
    client.set_account_enabled(student_id, False)
    suspension = stores.suspensions.create(
        student_id=student_id,
        reason=str(reason).strip(),
        end_date=parsed_end,
        student_name=user.get("displayName") or "",
        student_upn=user.get("userPrincipalName") or "",
        created_by=actor,
    )
    stores.audit.log_student_action(
        "student_suspended",
        actor,
        _describe(user),
        f"Suspended until {parsed_end.date().isoformat()}: {suspension.reason}",
    )
    return suspension


def lift_suspension(client: GraphClient, stores: Stores, student_id: str, actor: str) -> Dict[str, Any]:
    suspension = stores.suspensions.active_for(student_id)
    if suspension is None:
        raise NotFoundError("No active suspension found for this student")

    client.set_account_enabled(student_id, True)
    stores.suspensions.lift(student_id)
    stores.audit.log_student_action(
        "student_unsuspended",
        actor,
        f"{suspension.student_name} ({suspension.student_upn})",
        "Suspension lifted manually",
    )
    return {"studentId": student_id, "accountEnabled": True}


def transfer(
    client: GraphClient,
    stores: Stores,
    student_id: str,
    from_group_id: str,
    to_group_id: str,
    actor: str,
) -> Dict[str, Any]:
    """Move a student from one class group to another."""

    if not from_group_id or not to_group_id:
        raise ValidationError("fromGroupId and toGroupId are required")
    if from_group_id == to_group_id:
        raise ValidationError("Source and destination groups must be different")

    user = client.get_user(student_id, select=_USER_SUMMARY_SELECT)
    from_group = client.get_group(from_group_id, select="id,displayName")
    to_group = client.get_group(to_group_id, select="id,displayName")

    client.remove_user_from_group(student_id, from_group_id)
    client.add_user_to_group(student_id, to_group_id)

    from_name = from_group.get("displayName") or from_group_id
    to_name = to_group.get("displayName") or to_group_id
    stores.audit.log_student_action(
        "student_transferred",
        actor,
        _describe(user),
        f"Transferred from {from_name} to {to_name}",
        target_group=to_name,
    )
    return {
        "studentId": student_id,
        "from": from_name,
        "to": to_name,
        "message": f"{user.get('displayName')} transferred from {from_name} to {to_name}",
    }


def bulk_promote(
    client: GraphClient, stores: Stores, promotions: Iterable[Mapping[str, Any]], actor: str
) -> Dict[str, Any]:
    """Move every member of each ``fromGroupId`` into the matching ``toGroupId``."""

    pairs = list(promotions or [])
    if not pairs:
        raise ValidationError("promotions array is required with at least one entry")
    for pair in pairs:
        if not pair.get("fromGroupId") or not pair.get("toGroupId"):
            raise ValidationError("Each promotion needs fromGroupId and toGroupId")
        if pair["fromGroupId"] == pair["toGroupId"]:
            raise ValidationError("Source and destination groups must be different")

    results: List[Dict[str, Any]] = []
    for pair in pairs:
        source, target = pair["fromGroupId"], pair["toGroupId"]
        source_name = client.get_group(source, select="id,displayName").get("displayName") or source
        target_name = client.get_group(target, select="id,displayName").get("displayName") or target
        moved = 0
        errors: List[str] = []
        for member in client.list_group_members(source, select="id,displayName"):
            try:
                client.add_user_to_group(member["id"], target)
                client.remove_user_from_group(member["id"], source)
            except GraphClientError as exc:
                logger.error("Promotion of %s from %s failed: %s", member.get("displayName"), source_name, exc)
                errors.append(f"{member.get('displayName')}: {exc}")
                continue
            moved += 1
        results.append({"from": source_name, "to": target_name, "moved": moved, "errors": errors})

    total_moved = sum(item["moved"] for item in results)
    total_errors = sum(len(item["errors"]) for item in results)
    stores.audit.log_student_action(
        "bulk_promote",
        actor,
        f"{total_moved} student(s)",
        "; ".join(f"{item['from']} -> {item['to']}: {item['moved']} moved" for item in results),
    )
    return {
        "message": f"Promoted {total_moved} students across {len(results)} class(es). {total_errors} error(s).",
        "results": results,
    }


def create_student(
    client: GraphClient,
    stores: Stores,
    directory: DirectoryConfig,
    graph: GraphConfig,
    first_name: str,
    last_name: str,
    group_id: str,
    actor: str,
    department: Optional[str] = None,
) -> Dict[str, Any]:
    if not (first_name or "").strip() or not (last_name or "").strip() or not group_id:
        raise ValidationError("firstName, lastName, and groupId are required")
    if not directory.tenant_domain:
        raise ValidationError("directory.tenant_domain is not configured.")

    first = normalize_person_name(first_name)
    last = normalize_person_name(last_name)
    upn = derive_upn(first, last, directory.tenant_domain)
    password = temporary_password("Student")
    try:
        user = client.create_user(
            accountEnabled=True,
            displayName=f"{first} {last}",
            givenName=first,
            surname=last,
            userPrincipalName=upn,
            mailNickname=derive_mail_nickname(first, last),
            passwordProfile={"forceChangePasswordNextSignIn": True, "password": password},
            department=department or "Student",
            jobTitle="Student",
            usageLocation=graph.usage_location,
        )
    except GraphError as exc:
        if _is_duplicate_user(exc):
            raise ConflictError(
                "A user with this name already exists. Try a different name or add a number."
            ) from exc
        raise

    client.add_user_to_group(user["id"], group_id)
    main_group = directory.student_group_id
    if main_group and main_group != group_id:
        try:
            client.add_user_to_group(user["id"], main_group)
        except GraphClientError as exc:
            logger.warning("Could not add %s to the student group: %s", upn, exc)

    group_name = client.get_group(group_id, select="id,displayName").get("displayName") or group_id
    display_name = user.get("displayName") or f"{first} {last}"
    stores.audit.log_student_action(
        "student_created",
        actor,
        f"{display_name} ({upn})",
        f"Created and added to {group_name}",
        target_group=group_name,
    )
    return {
        "id": user["id"],
        "displayName": display_name,
        "userPrincipalName": user.get("userPrincipalName") or upn,
        "group": group_name,
        "temporaryPassword": password,
        "message": f"{display_name} created and added to {group_name}",
    }


def remove_student(
    client: GraphClient, stores: Stores, directory: DirectoryConfig, student_id: str, actor: str
) -> Dict[str, Any]:
    """Disable the account and take it out of the student group."""

    user = client.get_user(student_id, select=_USER_SUMMARY_SELECT)
    client.set_account_enabled(student_id, False)
    removed = False
    if directory.student_group_id:
        try:
            client.remove_user_from_group(student_id, directory.student_group_id)
            removed = True
        except GraphError as exc:
            if exc.status_code != 404:
                raise
            logger.info("%s was not a member of the student group", student_id)
    stores.audit.log_student_action(
        "student_removed",
        actor,
        _describe(user),
        "Disabled and removed from student group",
    )
    return {"id": student_id, "disabled": True, "removedFromGroup": removed}


def queue_group_change(
    stores: Stores,
    student_id: str,
    action: str,
    group_id: str,
    actor: str,
    student_name: Optional[str] = None,
    group_name: Optional[str] = None,
    reason: str = "manual",
) -> PendingGroupChange:
    return stores.pending_changes.add(
        student_id=student_id,
        action=action,
        group_id=group_id,
        student_name=student_name,
        group_name=group_name,
        reason=reason,
        requested_by=actor,
    )


__all__ = [
    "bulk_promote",
    "bulk_set_access",
    "create_student",
    "explain_access",
    "get_student",
    "lift_suspension",
    "list_students",
    "queue_group_change",
    "remove_student",
    "set_access",
    "suspend",
    "temporary_password",
    "transfer",
]
