from datetime import datetime, timedelta, timezone

import pytest

from student_access import students
from student_access.errors import ConflictError, NotFoundError, ValidationError
from student_access.graph_client import GraphError
from student_access.models import utc_now


@pytest.fixture
def school(graph, stores):
    graph.add_group("all-students", "All Students")
    graph.add_group("7a", "Class 7A")
    graph.add_group("8a", "Class 8A")
    graph.add_user("u1", "Ada Lovelace", enabled=True, groups=["all-students", "7a"])
    graph.add_user("u2", "Alan Turing", enabled=False, groups=["all-students", "7a"])
    graph.add_user("u3", "Grace Hopper", enabled=True, groups=["all-students"])
    stores.policies.update("policy-default-school", assigned_group_ids=["7a"])
    return graph


def test_temporary_password_uses_current_year():
    now = utc_now().replace(year=2031)
    assert students.temporary_password("Student", now) == "Welcome2031!Student"


def test_list_students_filters(school, stores, app_config):
    stores.suspensions.create("u3", "conduct", utc_now() + timedelta(days=1))
    directory = app_config.directory

    everyone = students.list_students(school, stores, directory)
    assert [item["id"] for item in everyone] == ["u1", "u2", "u3"]
    assert everyone[2]["suspension"]["reason"] == "conduct"

    enabled = students.list_students(school, stores, directory, status="enabled")
    assert [item["id"] for item in enabled] == ["u1"]
    suspended = students.list_students(school, stores, directory, status="suspended")
    assert [item["id"] for item in suspended] == ["u3"]
    assert students.list_students(school, stores, directory, search="TURING")[0]["id"] == "u2"

    covered = students.list_students(school, stores, directory, policy_id="policy-default-school")
    assert [item["id"] for item in covered] == ["u1", "u2"]

    in_class = students.list_students(school, stores, directory, group_id="7a")
    assert in_class[0]["appliedPolicy"] == "Standard School Hours"

    with pytest.raises(ValidationError):
        students.list_students(school, stores, directory, status="asleep")


def test_set_access_audits_manual_toggle(school, stores):
    user = students.set_access(school, stores, "u2", True, "tutor@school.test")

    assert user["accountEnabled"] is True
    entry = stores.audit.entries()[0]
    assert entry.action == "manual_toggle"
    assert entry.performed_by == "tutor@school.test"
    assert entry.target_user == "Alan Turing (alan.turing@school.test)"


def test_enabling_a_suspended_student_conflicts(school, stores):
    stores.suspensions.create("u1", "conduct", utc_now() + timedelta(days=1))
    with pytest.raises(ConflictError):
        students.set_access(school, stores, "u1", True, "tutor")
    with pytest.raises(ValidationError):
        students.set_access(school, stores, "u1", "yes", "tutor")


def test_bulk_enable_skips_suspended(school, stores, app_config):
    stores.suspensions.create("u2", "conduct", utc_now() + timedelta(days=1))

    result = students.bulk_set_access(school, stores, app_config.directory, "enable", None, "admin")

    assert result["total"] == 3
    assert result["succeeded"] == 2
    assert {"id": "u2", "success": False, "error": "Student is suspended"} in result["results"]
    assert len(stores.audit.entries()) == 1
    with pytest.raises(ValidationError):
        students.bulk_set_access(school, stores, app_config.directory, "toggle", ["u1"], "admin")


def test_suspend_and_lift(school, stores):
    end = utc_now() + timedelta(days=5)
    suspension = students.suspend(school, stores, "u1", "Phone in exam", end.isoformat(), "tutor")

    assert school.users["u1"]["accountEnabled"] is False
    assert suspension.student_upn == "ada.lovelace@school.test"
    assert stores.audit.entries()[0].action == "student_suspended"

    result = students.lift_suspension(school, stores, "u1", "tutor")
    assert result == {"studentId": "u1", "accountEnabled": True}
    assert school.users["u1"]["accountEnabled"] is True
    with pytest.raises(NotFoundError):
        students.lift_suspension(school, stores, "u1", "tutor")


def test_suspend_rejects_past_or_missing_dates(school, stores):
    with pytest.raises(ValidationError):
        students.suspend(school, stores, "u1", "late", (utc_now() - timedelta(days=1)).isoformat(), "t")
    with pytest.raises(ValidationError):
        students.suspend(school, stores, "u1", "late", "not a date", "t")
    with pytest.raises(ValidationError):
        students.suspend(school, stores, "u1", " ", utc_now() + timedelta(days=1), "t")


def test_explain_access_uses_live_groups(school, stores):
    evening = datetime(2026, 1, 12, 21, 0, tzinfo=timezone.utc)  # 22:00 in Berlin
    decision = students.explain_access(school, stores, "u1", evening)

    assert decision.source == "group_policy"
    assert decision.should_enable is False
    assert students.explain_access(school, stores, "u3", evening).source == "unmanaged"


def test_transfer_moves_between_groups(school, stores):
    result = students.transfer(school, stores, "u1", "7a", "8a", "admin")

    assert result["to"] == "Class 8A"
    assert "u1" not in school.members["7a"]
    assert "u1" in school.members["8a"]
    assert stores.audit.entries()[0].target_group == "Class 8A"
    with pytest.raises(ValidationError):
        students.transfer(school, stores, "u1", "8a", "8a", "admin")


def test_bulk_promote_reports_per_student_errors(school, stores):
    school.fail("add_user_to_group", "u2:8a")

    result = students.bulk_promote(school, stores, [{"fromGroupId": "7a", "toGroupId": "8a"}], "admin")

    assert result["results"][0]["moved"] == 1
    assert result["results"][0]["errors"][0].startswith("Alan Turing")
    assert school.members["8a"] == ["u1"]
    assert stores.audit.entries()[0].action == "bulk_promote"
    with pytest.raises(ValidationError):
        students.bulk_promote(school, stores, [{"fromGroupId": "7a"}], "admin")


def test_bulk_promote_rejects_same_source_and_destination(school, stores):
    before = list(school.members["7a"])

    with pytest.raises(ValidationError):
        students.bulk_promote(
            school,
            stores,
            [{"fromGroupId": "7a", "toGroupId": "8a"}, {"fromGroupId": "7a", "toGroupId": "7a"}],
            "admin",
        )

    assert school.members["7a"] == before
    assert not any(call[0] in ("add_user_to_group", "remove_user_from_group") for call in school.calls)


def test_create_student(school, stores, app_config):
    result = students.create_student(
        school, stores, app_config.directory, app_config.graph, "  ada-mae ", "o'neil", "7a", "admin"
    )

    created = school.users[result["id"]]
    assert result["userPrincipalName"] == "ada-mae.oneil@school.test"
    assert created["displayName"] == "Ada-Mae O'neil"
    assert created["usageLocation"] == "NO"
    assert result["temporaryPassword"].endswith("!Student")
    assert result["id"] in school.members["7a"]
    assert result["id"] in school.members["all-students"]

    with pytest.raises(ConflictError):
        students.create_student(
            school, stores, app_config.directory, app_config.graph, "Ada-Mae", "O'Neil", "7a", "admin"
        )


def test_remove_student_tolerates_missing_membership(school, stores, app_config):
    school.members["all-students"].remove("u3")

    result = students.remove_student(school, stores, app_config.directory, "u3", "admin")

    assert result == {"id": "u3", "disabled": True, "removedFromGroup": False}
    assert school.users["u3"]["accountEnabled"] is False


def test_remove_student_propagates_other_errors(school, stores, app_config):
    school.fail("remove_user_from_group", "u1:all-students", GraphError(403, "Forbidden", "denied"))
    with pytest.raises(GraphError):
        students.remove_student(school, stores, app_config.directory, "u1", "admin")


def test_queue_group_change(stores):
    change = students.queue_group_change(stores, "u1", "add", "7a", "admin", student_name="Ada")

    assert change.requested_by == "admin"
    assert stores.pending_changes.pending_count() == 1
