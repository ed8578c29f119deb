"""Group listing and dashboard figures."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import DirectoryConfig
from .context import Stores
from .errors import ValidationError
from .graph_client import GraphClient, GraphClientError
from .models import format_datetime, utc_now
from .scheduling import build_group_policy_map, resolve_group_access


logger = logging.getLogger(__name__)


def list_managed_groups(
    client: GraphClient, stores: Stores, directory: DirectoryConfig
) -> List[Dict[str, Any]]:
    """Security groups relevant to the portal with member counts and effective policy.

    With a configured name prefix the directory is filtered server-side;
    otherwise only groups referenced by a policy, a special group or the
    student group setting are returned.
    """

    policies = stores.policies.list()
    special_ids = {special.group_id for special in stores.special_groups.list()}
    policy_map = build_group_policy_map(policies)

    known = set(special_ids)
    for policy in policies:
        known.update(policy.assigned_group_ids)
    if directory.student_group_id:
        known.add(directory.student_group_id)

    prefix = directory.group_name_prefix
    groups = client.list_security_groups(prefix)
    if not prefix:
        groups = [group for group in groups if group.get("id") in known]

    results: List[Dict[str, Any]] = []
    for group in groups:
        group_id = group["id"]
        try:
            member_count = client.count_group_members(group_id)
        except GraphClientError as exc:
            logger.warning("Member count for %s unavailable: %s", group_id, exc)
            member_count = 0
        policy = policy_map.get(group_id)
        description = group.get("description") or (
            "Special/override group" if group_id in special_ids else None
        )
        results.append(
            {
                "id": group_id,
                "displayName": group.get("displayName") or group_id,
                "description": description,
                "memberCount": member_count,
                "policyId": policy.id if policy else None,
                "policyName": policy.name if policy else None,
                "isSpecialGroup": group_id in special_ids,
            }
        )

    results.sort(key=lambda item: (item["policyName"] is None, item["displayName"].casefold()))
    return results


def group_access(stores: Stores, group_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    decision = resolve_group_access(group_id, stores.policies.list(), now or utc_now())
    payload = decision.to_dict()
    payload["groupId"] = group_id
    return payload


def dashboard(
    client: GraphClient, stores: Stores, directory: DirectoryConfig
) -> Dict[str, Any]:
    if not directory.student_group_id:
        raise ValidationError("directory.student_group_id is not configured.")
    group_id = directory.student_group_id

    members = client.list_group_members(group_id, select="id,displayName,accountEnabled")
    suspended = {item.student_id for item in stores.suspensions.active()}
    enabled = sum(1 for member in members if member.get("accountEnabled") is True)
    disabled = sum(1 for member in members if member.get("accountEnabled") is False)
    group = client.get_group(group_id)

    audit = stores.audit
    return {
        "totalStudents": len(members),
        "enabledStudents": enabled,
        "disabledStudents": disabled,
        "suspendedStudents": sum(1 for member in members if member.get("id") in suspended),
        "activePolicies": sum(1 for policy in stores.policies.list() if policy.is_active),
        "specialGroups": len(stores.special_groups.list()),
        "pendingChanges": stores.pending_changes.pending_count(),
        "lastEnableRun": format_datetime(audit.last_run("enable")),
        "lastDisableRun": format_datetime(audit.last_run("disable")),
        "groups": [
            {
                "id": group.get("id") or group_id,
                "displayName": group.get("displayName"),
                "description": group.get("description"),
                "memberCount": len(members),
            }
        ],
    }


__all__ = ["dashboard", "group_access", "list_managed_groups"]
