"""Configuration loading utilities for the student access portal."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "STUDENT_ACCESS_CONFIG"
ENV_PREFIX = "STUDENT_ACCESS_"
DEFAULT_TIMEZONE = "W. Europe Standard Time"


@dataclass
class GraphConfig:
    """Settings for the Microsoft Graph app registration (client credentials)."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    sku_cache_file: Path = field(default_factory=lambda: Path("data/m365_skus.json"))
    cache_ttl_minutes: int = 720  # 12 hours by default
    usage_location: str = "NO"

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class DirectoryConfig:
    """Where students live in Entra ID and how new accounts are named."""

    student_group_id: Optional[str] = None
    tenant_domain: Optional[str] = None
    group_name_prefix: Optional[str] = None
    default_timezone: str = DEFAULT_TIMEZONE


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    data_dir: Path = Path("data")

    @property
    def policies_file(self) -> Path:
        return self.data_dir / "policies.json"

    @property
    def special_groups_file(self) -> Path:
        return self.data_dir / "special-groups.json"

    @property
    def pending_changes_file(self) -> Path:
        return self.data_dir / "pending-changes.json"

    @property
    def suspensions_file(self) -> Path:
        return self.data_dir / "suspensions.json"

    @property
    def audit_file(self) -> Path:
        return self.data_dir / "audit-log.json"


@dataclass
class AuthConfig:
    """Settings for Entra ID / Microsoft identity sign-in to the portal."""

    enabled: bool = False
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    allowed_groups: tuple[str, ...] = ()
    admin_groups: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ("https://graph.microsoft.com/User.Read",)

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    graph: GraphConfig = field(default_factory=GraphConfig)
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return value.split(",")
    return [value]


def _string_tuple(value: Any) -> tuple[str, ...]:
    return tuple(filter(None, [str(entry).strip() for entry in _normalize_sequence(value)]))


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)

    graph_section = _section(config_dict, "graph")
    default_graph = GraphConfig()
    try:
        cache_ttl = _to_int(graph_section.get("cache_ttl_minutes", default_graph.cache_ttl_minutes))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"graph.cache_ttl_minutes must be an integer: {exc}") from exc
    graph_config = GraphConfig(
        tenant_id=_optional_str(graph_section.get("tenant_id")),
        client_id=_optional_str(graph_section.get("client_id")),
        client_secret=_optional_str(graph_section.get("client_secret")),
        sku_cache_file=_optional_path(graph_section.get("sku_cache_file")) or default_graph.sku_cache_file,
        cache_ttl_minutes=cache_ttl,
        usage_location=_optional_str(graph_section.get("usage_location")) or default_graph.usage_location,
    )

    directory_section = _section(config_dict, "directory")
    directory_config = DirectoryConfig(
        student_group_id=_optional_str(directory_section.get("student_group_id")),
        tenant_domain=_optional_str(directory_section.get("tenant_domain")),
        group_name_prefix=_optional_str(directory_section.get("group_name_prefix")),
        default_timezone=_optional_str(directory_section.get("default_timezone")) or DEFAULT_TIMEZONE,
    )

    storage_section = _section(config_dict, "storage")
    storage_config = StorageConfig(
        data_dir=_optional_path(storage_section.get("data_dir")) or StorageConfig().data_dir,
    )

    auth_section = _section(config_dict, "auth")
    auth_config = AuthConfig(
        enabled=_to_bool(auth_section.get("enabled", False)),
        tenant_id=_optional_str(auth_section.get("tenant_id")),
        client_id=_optional_str(auth_section.get("client_id")),
        client_secret=_optional_str(auth_section.get("client_secret")),
        redirect_uri=_optional_str(auth_section.get("redirect_uri")),
        allowed_groups=_string_tuple(auth_section.get("allowed_groups")),
        admin_groups=_string_tuple(auth_section.get("admin_groups")),
        scopes=_string_tuple(auth_section.get("scopes")) or AuthConfig().scopes,
    )

    return AppConfig(
        graph=graph_config,
        directory=directory_config,
        storage=storage_config,
        auth=auth_config,
    )


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for persistence."""

    return {
        "graph": {
            "tenant_id": config.graph.tenant_id or "",
            "client_id": config.graph.client_id or "",
            "client_secret": config.graph.client_secret or "",
            "sku_cache_file": str(config.graph.sku_cache_file),
            "cache_ttl_minutes": config.graph.cache_ttl_minutes,
            "usage_location": config.graph.usage_location,
        },
        "directory": {
            "student_group_id": config.directory.student_group_id or "",
            "tenant_domain": config.directory.tenant_domain or "",
            "group_name_prefix": config.directory.group_name_prefix or "",
            "default_timezone": config.directory.default_timezone,
        },
        "storage": {
            "data_dir": str(config.storage.data_dir),
        },
        "auth": {
            "enabled": config.auth.enabled,
            "tenant_id": config.auth.tenant_id or "",
            "client_id": config.auth.client_id or "",
            "client_secret": config.auth.client_secret or "",
            "redirect_uri": config.auth.redirect_uri or "",
            "allowed_groups": list(config.auth.allowed_groups),
            "admin_groups": list(config.auth.admin_groups),
            "scopes": list(config.auth.scopes),
        },
    }


__all__ = [
    "AppConfig",
    "AuthConfig",
    "ConfigurationError",
    "DirectoryConfig",
    "GraphConfig",
    "StorageConfig",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
]
