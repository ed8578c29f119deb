import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import requests

from student_access.audit import SYSTEM_ACTOR
from student_access.config import GraphConfig
from student_access.enforcement import (
    apply_pending_changes,
    apply_policy_now,
    enforce_schedule,
    managed_group_ids,
    process_expired_suspensions,
)
from student_access.graph_client import GraphClient, GraphError

# Monday 2026-01-12, 10:00 and 20:00 in Berlin.
SCHOOL_HOURS = datetime(2026, 1, 12, 9, 0, tzinfo=timezone.utc)
EVENING = datetime(2026, 1, 12, 19, 0, tzinfo=timezone.utc)


@pytest.fixture
def school(graph, stores):
    graph.add_group("7a", "Class 7A")
    graph.add_group("club", "Robotics Club")
    graph.add_user("u1", "Ada Lovelace", enabled=False, groups=["7a"])
    graph.add_user("u2", "Alan Turing", enabled=True, groups=["7a", "club"])
    graph.add_user("u3", "Grace Hopper", enabled=True, groups=["club"])
    stores.policies.update("policy-default-school", assigned_group_ids=["7a"])
    return graph


def test_managed_groups_cover_active_policies_and_overrides(stores):
    stores.policies.update("policy-default-school", assigned_group_ids=["7a"])
    stores.policies.update("policy-extended-hours", assigned_group_ids=["inactive-only"])
    stores.special_groups.create("club", "policy-exam-period")

    assert managed_group_ids(stores.policies.list(), stores.special_groups.list()) == ["7a", "club"]


def test_enforce_enables_during_school_hours(school, stores):
    report = enforce_schedule(school, stores, now=SCHOOL_HOURS)

    assert report.enabled == ["ada.lovelace@school.test"]
    assert report.disabled == []
    assert report.evaluated == 2  # club has no policy, so u3 is not read
    assert report.unchanged == 1
    assert school.users["u1"]["accountEnabled"] is True

    entry = stores.audit.entries()[0]
    assert entry.action == "enable"
    assert entry.performed_by == SYSTEM_ACTOR


def test_enforce_disables_after_hours(school, stores):
    report = enforce_schedule(school, stores, now=EVENING)

    assert report.disabled == ["alan.turing@school.test"]
    assert school.users["u2"]["accountEnabled"] is False
    assert stores.audit.last_run("disable") is not None


def test_dry_run_changes_nothing(school, stores):
    report = enforce_schedule(school, stores, now=SCHOOL_HOURS, dry_run=True)

    assert report.enabled == ["ada.lovelace@school.test"]
    assert report.to_dict()["dryRun"] is True
    assert school.users["u1"]["accountEnabled"] is False
    assert ("set_account_enabled", "u1") not in school.calls
    assert stores.audit.entries() == []


def test_special_group_overrides_class_policy(school, stores):
    stores.policies.update("policy-exam-period", is_active=True)
    stores.special_groups.create("club", "policy-exam-period", priority=20)

    report = enforce_schedule(school, stores, now=EVENING)

    # u2 is in the always-on override; u3 was already enabled.
    assert report.disabled == []
    assert school.users["u2"]["accountEnabled"] is True
    assert report.evaluated == 3


def test_suspended_student_stays_disabled(school, stores):
    stores.suspensions.create("u1", "conduct", SCHOOL_HOURS + timedelta(days=2))

    report = enforce_schedule(school, stores, now=SCHOOL_HOURS)

    assert report.enabled == []
    assert school.users["u1"]["accountEnabled"] is False


def test_one_failure_does_not_stop_the_batch(school, stores):
    school.add_user("u4", "Katherine Johnson", enabled=False, groups=["7a"])
    school.fail("set_account_enabled", "u1")

    report = enforce_schedule(school, stores, now=SCHOOL_HOURS)

    assert report.enabled == ["katherine.johnson@school.test"]
    assert report.failures[0]["user"] == "ada.lovelace@school.test"
    assert "1 failure(s)" in stores.audit.entries()[0].details


def test_membership_read_failure_aborts_before_changes(school, stores):
    school.fail("list_group_members", "7a")

    with pytest.raises(GraphError):
        enforce_schedule(school, stores, now=SCHOOL_HOURS)
    assert not any(call[0] == "set_account_enabled" for call in school.calls)


def test_apply_policy_now_limits_scope_to_policy_groups(school, stores):
    school.add_group("8b", "Class 8B")
    school.add_user("u5", "Edsger Dijkstra", enabled=True, groups=["8b"])
    stores.policies.update("policy-extended-hours", is_active=True, assigned_group_ids=["8b"])
    policy = stores.policies.get("policy-extended-hours")

    report = apply_policy_now(school, stores, policy, now=EVENING, actor="admin@school.test")

    assert report.disabled == ["edsger.dijkstra@school.test"]
    # 7A students are out of scope even though their window is closed.
    assert school.users["u2"]["accountEnabled"] is True

    entry = stores.audit.entries()[0]
    assert entry.action == "disable"
    assert entry.performed_by == "admin@school.test"
    assert entry.details.startswith('Policy "Extended Hours (After-School)" applied disable')
    assert stores.audit.last_run("disable") is None


def test_apply_policy_now_without_groups_is_a_no_op(graph, stores):
    policy = stores.policies.get("policy-exam-period")
    assert apply_policy_now(graph, stores, policy).evaluated == 0
    assert graph.calls == []


def test_expired_suspensions_are_lifted(graph, stores):
    graph.add_user("u1", "Ada Lovelace", enabled=False)
    graph.add_user("u2", "Alan Turing", enabled=False)
    now = SCHOOL_HOURS
    stores.suspensions.create("u1", "done", now - timedelta(hours=1), student_name="Ada Lovelace")
    stores.suspensions.create("u2", "ongoing", now + timedelta(days=1), student_name="Alan Turing")

    results = process_expired_suspensions(graph, stores, now=now)

    assert results == [{"studentName": "Ada Lovelace", "status": "re-enabled"}]
    assert graph.users["u1"]["accountEnabled"] is True
    assert graph.users["u2"]["accountEnabled"] is False
    assert stores.suspensions.active_for("u1") is None
    assert stores.audit.entries()[0].action == "student_unsuspended"


def test_failed_re_enable_keeps_the_suspension_open(graph, stores):
    graph.fail("set_account_enabled", "u1")
    stores.suspensions.create("u1", "done", SCHOOL_HOURS - timedelta(hours=1), student_name="Ada")

    results = process_expired_suspensions(graph, stores, now=SCHOOL_HOURS)

    assert results[0]["status"].startswith("failed")
    assert stores.suspensions.active_for("u1") is not None


def test_pending_changes_are_applied_in_order(graph, stores):
    graph.add_group("7a", "Class 7A")
    graph.add_user("u1", "Ada Lovelace", groups=["7a"])
    stores.pending_changes.add("u1", "remove", "7a", student_name="Ada", group_name="Class 7A")
    stores.pending_changes.add("u2", "remove", "7a", student_name="Nobody", group_name="Class 7A")
    stores.pending_changes.add("u1", "add", "8b", student_name="Ada", group_name="Class 8B", reason="promotion")

    result = apply_pending_changes(graph, stores)

    assert result == {"completed": 2, "failed": 1}
    assert graph.members["8b"] == ["u1"]
    assert stores.pending_changes.pending_count() == 0
    failed = [change for change in stores.pending_changes.list() if change.status == "failed"]
    assert failed[0].student_name == "Nobody"
    assert stores.audit.entries()[0].details == "Added to Class 8B (promotion)"


def test_apply_policy_now_respects_suspensions_and_overrides(school, stores):
    school.add_group("8b", "Class 8B")
    school.add_user("u5", "Edsger Dijkstra", enabled=True, groups=["8b"])
    school.add_user("u6", "Barbara Liskov", enabled=True, groups=["8b", "club"])
    school.add_user("u7", "Donald Knuth", enabled=False, groups=["8b", "club"])
    stores.policies.update("policy-exam-period", is_active=True)
    stores.special_groups.create("club", "policy-exam-period", priority=20)
    stores.suspensions.create("u7", "conduct", EVENING + timedelta(days=2))
    stores.policies.update("policy-extended-hours", is_active=True, assigned_group_ids=["8b"])
    policy = stores.policies.get("policy-extended-hours")

    report = apply_policy_now(school, stores, policy, now=EVENING)

    assert report.evaluated == 3
    assert report.disabled == ["edsger.dijkstra@school.test"]
    assert report.enabled == []
    # The always-on override keeps u6 enabled; the suspension keeps u7 off.
    assert school.users["u6"]["accountEnabled"] is True
    assert school.users["u7"]["accountEnabled"] is False
    assert ("set_account_enabled", "u7") not in school.calls


class _Reply:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self.headers = {"Content-Type": "application/json"}
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self):
        return json.loads(self.text)


class _DirectorySession:
    """Serves one page of group members and drops the connection for some users."""

    def __init__(self, members, unreachable):
        self.members = members
        self.unreachable = set(unreachable)
        self.patched = []

    def request(self, method, url, **kwargs):
        if method == "GET":
            return _Reply(200, {"value": self.members})
        user_id = url.rsplit("/", 1)[-1]
        if user_id in self.unreachable:
            raise requests.ConnectionError("connection reset")
        self.patched.append((user_id, kwargs["json"]["accountEnabled"]))
        return _Reply(204)


def test_connection_error_on_one_account_does_not_stop_the_run(stores, tmp_path):
    stores.policies.update("policy-default-school", assigned_group_ids=["7a"])
    session = _DirectorySession(
        [
            {"id": "u1", "userPrincipalName": "ada@school.test", "accountEnabled": False},
            {"id": "u2", "userPrincipalName": "alan@school.test", "accountEnabled": False},
        ],
        unreachable={"u1"},
    )
    config = GraphConfig(
        tenant_id="tenant",
        client_id="client",
        client_secret="secret",
        sku_cache_file=tmp_path / "skus.json",
    )

    with patch("student_access.graph_client.msal.ConfidentialClientApplication") as factory:
        factory.return_value.acquire_token_silent.return_value = None
        factory.return_value.acquire_token_for_client.return_value = {"access_token": "token"}
        report = enforce_schedule(GraphClient(config, session=session), stores, now=SCHOOL_HOURS)

    assert report.enabled == ["alan@school.test"]
    assert report.failures[0]["user"] == "ada@school.test"
    assert "connection reset" in report.failures[0]["error"]
    assert session.patched == [("u2", True)]
    assert "1 failure(s)" in stores.audit.entries()[0].details
