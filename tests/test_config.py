from pathlib import Path

import pytest

from student_access import config as config_module
from student_access.config import ConfigurationError, config_to_dict, ensure_default_config, load_config


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_reads_sections(tmp_path):
    path = _write(
        tmp_path / "settings.yaml",
        """
graph:
  tenant_id: tenant
  client_id: client
  client_secret: secret
  cache_ttl_minutes: 60
directory:
  student_group_id: students
  tenant_domain: school.test
storage:
  data_dir: /srv/portal
auth:
  enabled: "yes"
  admin_groups: "admins, it-staff"
""",
    )
    config = load_config(path)

    assert config.graph.has_credentials
    assert config.graph.cache_ttl_minutes == 60
    assert config.graph.usage_location == "NO"
    assert config.directory.student_group_id == "students"
    assert config.directory.default_timezone == "W. Europe Standard Time"
    assert config.storage.policies_file == Path("/srv/portal/policies.json")
    assert config.auth.enabled is True
    assert config.auth.admin_groups == ("admins", "it-staff")
    assert config.auth.scopes == ("https://graph.microsoft.com/User.Read",)


def test_environment_overrides_file_values(tmp_path, monkeypatch):
    path = _write(tmp_path / "settings.yaml", "graph:\n  client_secret: from-file\n")
    monkeypatch.setenv("STUDENT_ACCESS_GRAPH__CLIENT_SECRET", "from-env")
    monkeypatch.setenv("STUDENT_ACCESS_DIRECTORY__TENANT_DOMAIN", "env.test")

    config = load_config(path)

    assert config.graph.client_secret == "from-env"
    assert config.directory.tenant_domain == "env.test"


def test_invalid_files_raise_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.yaml")
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path / "list.yaml", "- a\n- b\n"))
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path / "section.yaml", "graph: nope\n"))
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path / "ttl.yaml", "graph:\n  cache_ttl_minutes: soon\n"))


def test_ensure_default_config_copies_template(tmp_path):
    template = _write(tmp_path / "example.yaml", "storage:\n  data_dir: data\n")
    target = tmp_path / "config" / "settings.yaml"

    assert ensure_default_config(target, template) == target
    assert target.read_text(encoding="utf-8") == template.read_text(encoding="utf-8")

    with pytest.raises(ConfigurationError):
        ensure_default_config(tmp_path / "other.yaml", tmp_path / "absent.yaml")


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = _write(tmp_path / "env.yaml", "directory:\n  group_name_prefix: SG-\n")
    monkeypatch.setenv(config_module.ENV_CONFIG_PATH, str(path))

    assert load_config().directory.group_name_prefix == "SG-"


def test_config_to_dict_round_trips_through_yaml_shape(tmp_path):
    config = load_config(_write(tmp_path / "settings.yaml", "auth:\n  allowed_groups: [a, b]\n"))
    payload = config_to_dict(config)

    assert payload["auth"]["allowed_groups"] == ["a", "b"]
    assert payload["graph"]["client_secret"] == ""
    assert payload["storage"]["data_dir"] == "data"
