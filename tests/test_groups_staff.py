from datetime import datetime, timedelta, timezone

import pytest

from student_access import groups, staff
from student_access.config import DirectoryConfig
from student_access.errors import ConflictError, ValidationError
from student_access.graph_client import GraphError
from student_access.models import utc_now


@pytest.fixture
def school(graph, stores):
    graph.add_group("all-students", "All Students")
    graph.add_group("7a", "Class 7A")
    graph.add_group("club", "Chess Club")
    graph.add_group("unrelated", "Finance Team")
    graph.add_user("u1", "Ada Lovelace", enabled=True, groups=["all-students", "7a"])
    graph.add_user("u2", "Alan Turing", enabled=False, groups=["all-students", "club"])
    graph.add_user("t1", "Barbara Liskov", enabled=True, groups=["unrelated"], jobTitle="Tutor")
    stores.policies.update("policy-default-school", assigned_group_ids=["7a"])
    stores.special_groups.create("club", "policy-exam-period", group_name="Chess Club")
    return graph


def test_managed_groups_without_prefix_only_known_groups(school, stores, app_config):
    items = groups.list_managed_groups(school, stores, app_config.directory)

    assert [item["id"] for item in items] == ["7a", "all-students", "club"]
    assert items[0]["policyName"] == "Standard School Hours"
    assert items[0]["memberCount"] == 1
    club = items[2]
    assert club["isSpecialGroup"] is True
    assert club["description"] == "Special/override group"


def test_managed_groups_with_prefix(school, stores):
    directory = DirectoryConfig(student_group_id="all-students", group_name_prefix="Class")
    items = groups.list_managed_groups(school, stores, directory)
    assert [item["id"] for item in items] == ["7a"]


def test_member_count_failure_is_not_fatal(school, stores, app_config):
    school.fail("count_group_members", "club")
    items = groups.list_managed_groups(school, stores, app_config.directory)
    assert next(item for item in items if item["id"] == "club")["memberCount"] == 0


def test_group_access(stores):
    stores.policies.update("policy-default-school", assigned_group_ids=["7a"])
    during = datetime(2026, 1, 12, 9, 0, tzinfo=timezone.utc)

    payload = groups.group_access(stores, "7a", during)

    assert payload["groupId"] == "7a"
    assert payload["shouldEnable"] is True
    assert groups.group_access(stores, "none", during)["source"] == "unmanaged"


def test_dashboard(school, stores, app_config):
    stores.suspensions.create("u2", "conduct", utc_now() + timedelta(days=1))
    stores.pending_changes.add("u1", "add", "club")
    stores.audit.log_system_action("enable", "Scheduled enable: 1 account(s)")

    data = groups.dashboard(school, stores, app_config.directory)

    assert data["totalStudents"] == 2
    assert data["enabledStudents"] == 1
    assert data["disabledStudents"] == 1
    assert data["suspendedStudents"] == 1
    assert data["activePolicies"] == 1
    assert data["specialGroups"] == 1
    assert data["pendingChanges"] == 1
    assert data["lastEnableRun"] is not None
    assert data["lastDisableRun"] is None
    assert data["groups"][0]["displayName"] == "All Students"

    with pytest.raises(ValidationError):
        groups.dashboard(school, stores, DirectoryConfig())


def test_list_staff_excludes_students(school, app_config):
    items = staff.list_staff(school, app_config.directory, search="Bar", status="enabled", role="Tutor")

    assert [item["id"] for item in items] == ["t1"]
    filter_expr = school.list_users_filters[-1]
    assert "startswith(displayName,'Bar')" in filter_expr
    assert "accountEnabled eq true" in filter_expr
    assert "jobTitle eq 'Tutor'" in filter_expr

    with pytest.raises(ValidationError):
        staff.list_staff(school, app_config.directory, status="retired")


def test_list_licenses_sorts_available_first(graph):
    graph.skus = [
        {"skuId": "e97c048c-37a4-45fb-ab50-922fbf07a370", "prepaidUnits": {"enabled": 10}, "consumedUnits": 10},
        {"skuId": "unknown-sku", "skuPartNumber": "ZZ_CUSTOM", "prepaidUnits": {"enabled": 5}, "consumedUnits": 1},
    ]

    items = staff.list_licenses(graph)

    assert [item["displayName"] for item in items] == ["ZZ_CUSTOM", "Microsoft 365 A5 for Faculty"]
    assert items[0]["availableUnits"] == 4


def test_onboard_reports_partial_failures(graph, stores, app_config):
    graph.fail("add_user_to_group", "new-1:g-bad")
    request = {
        "firstName": "barbara",
        "lastName": "liskov",
        "role": "Tutor",
        "licenseSkuIds": ["sku-1"],
        "groupIds": ["g-ok", "g-bad"],
    }

    result = staff.onboard(graph, stores, app_config.directory, app_config.graph, request, "hr")

    assert result["userPrincipalName"] == "barbara.liskov@school.test"
    assert result["licensesAssigned"] == 1
    assert result["groupsAdded"] == 1
    assert len(result["warnings"]) == 1
    assert graph.users["new-1"]["department"] == "Tutor"
    assert stores.audit.entries()[0].action == "staff_onboarded"

    with pytest.raises(ConflictError):
        staff.onboard(graph, stores, app_config.directory, app_config.graph, request, "hr")
    with pytest.raises(ValidationError):
        staff.onboard(graph, stores, app_config.directory, app_config.graph, {"firstName": "x"}, "hr")


def test_offboard_runs_requested_steps(school, stores):
    school.users["t1"]["assignedLicenses"] = [{"skuId": "sku-1"}, {"skuId": "sku-2"}]
    school.fail("revoke_sign_in_sessions", "t1")
    request = {
        "userId": "t1",
        "offboardReason": "Resigned",
        "disableAccount": True,
        "revokeSessions": True,
        "removeLicenses": True,
        "removeFromGroups": True,
        "forwardEmail": "office@school.test",
    }

    result = staff.offboard(school, stores, request, "hr")

    assert result["actions"] == [
        "Account disabled",
        "Session revoke failed",
        "2 license(s) removed",
        "Removed from 1 group(s)",
        "Auto-reply set to redirect to office@school.test",
    ]
    assert school.users["t1"]["accountEnabled"] is False
    assert "office@school.test" in school.auto_replies["t1"]
    assert stores.audit.entries()[0].action == "staff_offboarded"


def test_offboard_unknown_user(school, stores):
    with pytest.raises(GraphError):
        staff.offboard(school, stores, {"userId": "ghost", "offboardReason": "x"}, "hr")
    with pytest.raises(ValidationError):
        staff.offboard(school, stores, {"userId": "t1"}, "hr")
