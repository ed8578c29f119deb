import json

import pytest
from typer.testing import CliRunner

from student_access import cli

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "graph:\n"
        "  tenant_id: tenant\n"
        "  client_id: client\n"
        "  client_secret: very-secret\n"
        "directory:\n"
        "  student_group_id: all-students\n"
        "storage:\n"
        f"  data_dir: {tmp_path / 'data'}\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def school(graph, monkeypatch):
    graph.add_group("7a", "Class 7A")
    graph.add_user("u1", "Ada Lovelace", enabled=False, groups=["7a"])
    monkeypatch.setattr(cli, "GraphClient", lambda config: graph)
    return graph


def test_policy_add_and_list(config_file):
    result = runner.invoke(
        cli.app,
        ["policy", "add", "Evening", "--enable", "17:00", "--disable", "21:00", "--day", "Mon", "--config", config_file],
    )
    assert result.exit_code == 0, result.output
    assert "Created policy 'Evening'" in result.output

    listing = runner.invoke(cli.app, ["policy", "list", "--config", config_file])
    assert "Evening" in listing.output
    assert "days: Monday" in listing.output


def test_invalid_policy_exits_with_error(config_file):
    result = runner.invoke(
        cli.app, ["policy", "add", "Broken", "--enable", "17:00", "--disable", "17:00", "--config", config_file]
    )
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_enforce_dry_run_reports_json(config_file, school):
    runner.invoke(cli.app, ["policy", "assign", "policy-default-school", "--group", "7a", "--config", config_file])

    result = runner.invoke(
        cli.app, ["enforce", "--dry-run", "--at", "2026-01-12T09:00:00Z", "--config", config_file]
    )

    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["enabled"] == ["ada.lovelace@school.test"]
    assert report["dryRun"] is True
    assert school.users["u1"]["accountEnabled"] is False


def test_enforce_rejects_bad_timestamp(config_file, school):
    result = runner.invoke(cli.app, ["enforce", "--at", "half past nine", "--config", config_file])
    assert result.exit_code != 0


def test_activate_with_apply_now(config_file, school):
    runner.invoke(cli.app, ["policy", "assign", "policy-exam-period", "--group", "7a", "--config", config_file])

    result = runner.invoke(
        cli.app, ["policy", "activate", "policy-exam-period", "--apply-now", "--config", config_file]
    )

    assert result.exit_code == 0, result.output
    assert "is now active" in result.output
    assert school.users["u1"]["accountEnabled"] is True


def test_special_group_requires_known_policy(config_file):
    result = runner.invoke(cli.app, ["special-group", "add", "club", "--policy", "nope", "--config", config_file])
    assert result.exit_code == 1

    added = runner.invoke(
        cli.app,
        ["special-group", "add", "club", "--policy", "policy-exam-period", "--name", "Club", "--config", config_file],
    )
    assert added.exit_code == 0
    listing = runner.invoke(cli.app, ["special-group", "list", "--config", config_file])
    assert "Club [club] priority 10 -> Exam Period (Always On)" in listing.output


def test_queues_and_suspensions_empty(config_file):
    assert "No changes queued." in runner.invoke(cli.app, ["changes", "list", "--config", config_file]).output
    assert "No pending changes." in runner.invoke(cli.app, ["changes", "apply", "--config", config_file]).output
    assert "No active suspensions." in runner.invoke(cli.app, ["suspensions", "list", "--config", config_file]).output
    processed = runner.invoke(cli.app, ["suspensions", "process", "--config", config_file])
    assert "No expired suspensions to process." in processed.output


def test_show_config_masks_secrets(config_file):
    result = runner.invoke(cli.app, ["show-config", "--config", config_file])
    assert result.exit_code == 0
    assert "very-secret" not in result.output
    assert "client_secret: '********'" in result.output


def test_missing_config_file(tmp_path):
    result = runner.invoke(cli.app, ["policy", "list", "--config", str(tmp_path / "absent.yaml")])
    assert result.exit_code == 1
    assert "does not exist" in result.output
