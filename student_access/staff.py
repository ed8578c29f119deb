"""Staff directory, licence overview and on/offboarding."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .config import DirectoryConfig, GraphConfig
from .context import Stores
from .errors import ConflictError, ValidationError
from .graph_client import GraphClient, GraphClientError, GraphError
from .models import derive_mail_nickname, derive_upn, normalize_person_name
from .students import temporary_password


logger = logging.getLogger(__name__)

# Friendly names for common Microsoft 365 Education SKUs.
LICENSE_NAMES = {
    "94763226-9b3c-4e75-a931-5c89701abe66": "Microsoft 365 A1 for Faculty",
    "78e66a63-337a-4a9a-8959-41c6654dfb56": "Microsoft 365 A3 for Faculty",
    "e97c048c-37a4-45fb-ab50-922fbf07a370": "Microsoft 365 A5 for Faculty",
    "314c4481-f395-4525-be8b-2ec4bb1e9d91": "Microsoft 365 A1 for Students",
    "18250162-5d87-4436-a834-d795c15c80f3": "Microsoft 365 A3 for Students",
    "46c119d4-0379-4a9d-85e4-97c66d3f909e": "Microsoft 365 A5 for Students",
    "dcb1a3ae-b33f-4487-846a-a640262fadf4": "Microsoft 365 Business Basic",
    "05e9a617-0261-4cee-bb44-138d3ef5d965": "Microsoft 365 E3",
    "06ebc4ee-1bb5-47dd-8120-11324bc54e06": "Microsoft 365 E5",
    "4b585984-651b-448a-9e53-3b10f069cf7f": "Office 365 F3",
    "6fd2c87f-b296-42f0-b197-1e91e994b900": "Office 365 E3",
    "c7df2760-2c81-4ef7-b578-5b5392b571df": "Office 365 E5",
    "3b555118-da6a-4418-894f-7df1e2096870": "Microsoft 365 Business Standard",
    "cbdc14ab-d96c-4c30-b9f4-6ada7cdc1d46": "Microsoft 365 Business Premium",
    "1f2f344a-700d-42c9-9427-5cea45d4a4d2": "Microsoft Stream",
    "a403ebcc-fae0-4ca2-8c8c-7a907fd6c235": "Power BI (free)",
    "f8a1db68-be16-40ed-86d5-cb42ce701560": "Power BI Pro",
    "061f9ace-7d42-4136-88ac-31dc755f143f": "Intune",
    "efccb6f7-5641-4e0e-bd10-b4976e1bf68e": "Enterprise Mobility + Security E3",
}

STAFF_STATUSES = ("enabled", "disabled")


def license_name(sku_id: str, fallback: Optional[str] = None) -> str:
    return LICENSE_NAMES.get(sku_id) or fallback or sku_id


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def list_staff(
    client: GraphClient,
    directory: DirectoryConfig,
    search: Optional[str] = None,
    role: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Member users who are not in the student group."""

    if status and status not in STAFF_STATUSES:
        raise ValidationError("status must be 'enabled' or 'disabled'")
    filters = ["userType eq 'Member'"]
    if search:
        needle = _odata_literal(search)
        filters.append(f"(startswith(displayName,'{needle}') or startswith(userPrincipalName,'{needle}'))")
    if status:
        filters.append(f"accountEnabled eq {'true' if status == 'enabled' else 'false'}")
    if role:
        filters.append(f"jobTitle eq '{_odata_literal(role)}'")
    users = client.list_users(" and ".join(filters))

    student_ids: set[str] = set()
    if directory.student_group_id:
        try:
            student_ids = {
                member["id"] for member in client.list_group_members(directory.student_group_id, select="id")
            }
        except GraphClientError as exc:
            logger.warning("Student group unavailable, staff list not filtered: %s", exc)

    staff: List[Dict[str, Any]] = []
    for user in users:
        if user.get("id") in student_ids:
            continue
        licenses = [
            {
                "skuId": item.get("skuId"),
                "displayName": license_name(item.get("skuId") or ""),
                "disabledPlans": item.get("disabledPlans") or [],
            }
            for item in user.get("assignedLicenses") or []
        ]
        staff.append(
            {
                "id": user.get("id"),
                "displayName": user.get("displayName"),
                "userPrincipalName": user.get("userPrincipalName"),
                "mail": user.get("mail"),
                "accountEnabled": bool(user.get("accountEnabled")),
                "jobTitle": user.get("jobTitle"),
                "department": user.get("department"),
                "officeLocation": user.get("officeLocation"),
                "mobilePhone": user.get("mobilePhone"),
                "assignedLicenses": licenses,
                "createdDateTime": user.get("createdDateTime"),
            }
        )
    return staff


def list_licenses(client: GraphClient, force_refresh: bool = False) -> List[Dict[str, Any]]:
    """Subscribed SKUs with unit counts; SKUs with free seats come first."""

    snapshot = client.get_sku_catalog(force_refresh=force_refresh)
    licenses: List[Dict[str, Any]] = []
    for sku in snapshot.skus:
        prepaid = int((sku.get("prepaidUnits") or {}).get("enabled") or 0)
        consumed = int(sku.get("consumedUnits") or 0)
        licenses.append(
            {
                "skuId": sku.get("skuId"),
                "skuPartNumber": sku.get("skuPartNumber"),
                "displayName": license_name(sku.get("skuId") or "", sku.get("skuPartNumber")),
                "consumedUnits": consumed,
                "prepaidUnitsEnabled": prepaid,
                "availableUnits": prepaid - consumed,
            }
        )
    licenses.sort(key=lambda item: (item["availableUnits"] <= 0, item["displayName"].casefold()))
    return licenses


def onboard(
    client: GraphClient,
    stores: Stores,
    directory: DirectoryConfig,
    graph: GraphConfig,
    request: Mapping[str, Any],
    actor: str,
) -> Dict[str, Any]:
    """Create a staff account, then assign licences and groups.

    Licence and group failures are reported in the result; the account is kept.
    """

    first_raw = str(request.get("firstName") or "").strip()
    last_raw = str(request.get("lastName") or "").strip()
    role = str(request.get("role") or "").strip()
    if not first_raw or not last_raw or not role:
        raise ValidationError("firstName, lastName, and role are required")
    if not directory.tenant_domain:
        raise ValidationError("directory.tenant_domain is not configured.")

    first = normalize_person_name(first_raw)
    last = normalize_person_name(last_raw)
    upn = derive_upn(first, last, directory.tenant_domain)
    password = temporary_password("Staff")
    department = request.get("department") or role
    try:
        user = client.create_user(
            accountEnabled=True,
            displayName=f"{first} {last}",
            givenName=first,
            surname=last,
            userPrincipalName=upn,
            mailNickname=derive_mail_nickname(first, last),
            passwordProfile={"forceChangePasswordNextSignIn": True, "password": password},
            department=department,
            jobTitle=request.get("jobTitle") or role,
            officeLocation=request.get("officeLocation") or None,
            mobilePhone=request.get("mobilePhone") or None,
            usageLocation=graph.usage_location,
        )
    except GraphError as exc:
        if "already exists" in (exc.description or "").lower():
            raise ConflictError("A user with this name already exists. Try a different name.") from exc
        raise

    user_id = user["id"]
    sku_ids = [sku for sku in request.get("licenseSkuIds") or [] if sku]
    assigned: List[str] = []
    warnings: List[str] = []
    if sku_ids:
        try:
            client.assign_licenses(user_id, add_skus=sku_ids)
            assigned = sku_ids
        except GraphClientError as exc:
            logger.error("Licence assignment for %s failed: %s", upn, exc)
            warnings.append(f"License assignment failed: {exc}")

    added_groups: List[str] = []
    for group_id in request.get("groupIds") or []:
        try:
            client.add_user_to_group(user_id, group_id)
        except GraphClientError as exc:
            logger.warning("Could not add %s to group %s: %s", upn, group_id, exc)
            warnings.append(f"Group {group_id}: {exc}")
            continue
        added_groups.append(group_id)

    display_name = user.get("displayName") or f"{first} {last}"
    stores.audit.log_student_action(
        "staff_onboarded",
        actor,
        f"{display_name} ({upn})",
        f"Staff onboarded as {role}. Licenses: {len(assigned)}, Groups: {len(added_groups)}",
        target_group=department,
    )
    return {
        "id": user_id,
        "displayName": display_name,
        "userPrincipalName": upn,
        "role": role,
        "licensesAssigned": len(assigned),
        "groupsAdded": len(added_groups),
        "temporaryPassword": password,
        "warnings": warnings,
        "message": f"{display_name} onboarded successfully as {role}",
    }


def _remove_from_groups(client: GraphClient, user_id: str, groups: Iterable[Mapping[str, Any]]) -> int:
    removed = 0
    for group in groups:
        try:
            client.remove_user_from_group(user_id, group["id"])
        except GraphClientError as exc:
            # dynamic and mail-enabled groups cannot be edited through Graph
            logger.info("Skipped group %s for %s: %s", group.get("displayName"), user_id, exc)
            continue
        removed += 1
    return removed


def offboard(client: GraphClient, stores: Stores, request: Mapping[str, Any], actor: str) -> Dict[str, Any]:
    """Run the requested offboarding steps and report each one."""

    user_id = request.get("userId")
    reason = request.get("offboardReason")
    if not user_id or not reason:
        raise ValidationError("userId and offboardReason are required")

    user = client.get_user(user_id, select="id,displayName,userPrincipalName,assignedLicenses")
    actions: List[str] = []

    if request.get("disableAccount"):
        client.set_account_enabled(user_id, False)
        actions.append("Account disabled")

    if request.get("revokeSessions"):
        try:
            client.revoke_sign_in_sessions(user_id)
            actions.append("Sessions revoked")
        except GraphClientError as exc:
            logger.error("Session revoke failed for %s: %s", user_id, exc)
            actions.append("Session revoke failed")

    licenses = [item.get("skuId") for item in user.get("assignedLicenses") or [] if item.get("skuId")]
    if request.get("removeLicenses") and licenses:
        try:
            client.assign_licenses(user_id, remove_skus=licenses)
            actions.append(f"{len(licenses)} license(s) removed")
        except GraphClientError as exc:
            logger.error("License removal failed for %s: %s", user_id, exc)
            actions.append("License removal failed")

    if request.get("removeFromGroups"):
        try:
            removed = _remove_from_groups(client, user_id, client.get_user_groups(user_id))
            actions.append(f"Removed from {removed} group(s)")
        except GraphClientError as exc:
            logger.error("Group removal failed for %s: %s", user_id, exc)
            actions.append("Group removal failed")

    if request.get("convertToSharedMailbox"):
        actions.append("Shared mailbox conversion requested (requires Exchange admin action)")

    forward_to = request.get("forwardEmail")
    if forward_to:
        message = f"This employee has left the organization. Please contact {forward_to} instead."
        try:
            client.set_auto_reply(user_id, message)
            actions.append(f"Auto-reply set to redirect to {forward_to}")
        except GraphClientError as exc:
            logger.error("Auto-reply failed for %s: %s", user_id, exc)
            actions.append("Mail forwarding failed")

    display_name = user.get("displayName") or user_id
    upn = user.get("userPrincipalName") or ""
    stores.audit.log_student_action(
        "staff_offboarded",
        actor,
        f"{display_name} ({upn})",
        f"Staff offboarded: {reason}. Actions: {', '.join(actions) or 'none'}",
    )
    return {
        "userId": user_id,
        "displayName": display_name,
        "userPrincipalName": upn,
        "actions": actions,
        "reason": reason,
        "message": f"{display_name} offboarded successfully",
    }


__all__ = ["LICENSE_NAMES", "license_name", "list_licenses", "list_staff", "offboard", "onboard"]
