from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from student_access.config import AppConfig, DirectoryConfig, GraphConfig, StorageConfig
from student_access.context import Stores
from student_access.graph_client import CatalogSnapshot, GraphError


class FakeGraphClient:
    """In-memory stand-in for :class:`GraphClient` keyed by object id."""

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.members: Dict[str, List[str]] = {}
        self.skus: List[Dict[str, Any]] = []
        self.failures: Dict[tuple, Exception] = {}
        self.calls: List[tuple] = []
        self.list_users_filters: List[Optional[str]] = []
        self.auto_replies: Dict[str, str] = {}
        self.licenses: Dict[str, List[str]] = {}
        self._next_id = 0

    # -- fixtures helpers ------------------------------------------------
    def add_group(self, group_id: str, name: str, description: Optional[str] = None) -> None:
        self.groups[group_id] = {"id": group_id, "displayName": name, "description": description}
        self.members.setdefault(group_id, [])

    def add_user(self, user_id: str, name: str, enabled: bool = True, groups=(), **extra: Any) -> None:
        upn = extra.pop("userPrincipalName", f"{name.lower().replace(' ', '.')}@school.test")
        self.users[user_id] = {
            "id": user_id,
            "displayName": name,
            "userPrincipalName": upn,
            "accountEnabled": enabled,
            **extra,
        }
        for group_id in groups:
            self.members.setdefault(group_id, []).append(user_id)

    def fail(self, method: str, key: str, exc: Optional[Exception] = None) -> None:
        self.failures[(method, key)] = exc or GraphError(500, "InternalServerError", f"{method} failed")

    def _check(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        exc = self.failures.get((method, key))
        if exc is not None:
            raise exc

    # -- users -----------------------------------------------------------
    def get_user(self, user_id: str, select: Optional[str] = None) -> Dict[str, Any]:
        self._check("get_user", user_id)
        if user_id not in self.users:
            raise GraphError(404, "Request_ResourceNotFound", f"Resource '{user_id}' does not exist.")
        return dict(self.users[user_id])

    def list_users(self, filter_expr: Optional[str] = None, select: Optional[str] = None) -> List[Dict[str, Any]]:
        self.list_users_filters.append(filter_expr)
        return [dict(user) for user in self.users.values()]

    def create_user(self, **fields: Any) -> Dict[str, Any]:
        upn = fields.get("userPrincipalName")
        self._check("create_user", upn)
        if any(user["userPrincipalName"] == upn for user in self.users.values()):
            raise GraphError(
                400,
                "Request_BadRequest",
                "Another object with the same value for property userPrincipalName already exists.",
            )
        self._next_id += 1
        user_id = f"new-{self._next_id}"
        self.users[user_id] = {"id": user_id, **{k: v for k, v in fields.items() if v is not None}}
        return dict(self.users[user_id])

    def set_account_enabled(self, user_id: str, enabled: bool) -> None:
        self._check("set_account_enabled", user_id)
        self.users.setdefault(user_id, {"id": user_id, "displayName": user_id})["accountEnabled"] = enabled

    def revoke_sign_in_sessions(self, user_id: str) -> None:
        self._check("revoke_sign_in_sessions", user_id)

    def set_auto_reply(self, user_id: str, message: str) -> None:
        self._check("set_auto_reply", user_id)
        self.auto_replies[user_id] = message

    def get_user_groups(self, user_id: str) -> List[Dict[str, Any]]:
        self._check("get_user_groups", user_id)
        return [
            {"id": group_id, "displayName": self.groups.get(group_id, {}).get("displayName")}
            for group_id, member_ids in self.members.items()
            if user_id in member_ids
        ]

    # -- licences --------------------------------------------------------
    def get_sku_catalog(self, force_refresh: bool = False) -> CatalogSnapshot:
        return CatalogSnapshot(fetched_at=datetime.now(timezone.utc), skus=list(self.skus), stale=False)

    def assign_licenses(self, user_id: str, add_skus=(), remove_skus=()) -> Dict[str, Any]:
        self._check("assign_licenses", user_id)
        current = self.licenses.setdefault(user_id, [])
        current.extend(add_skus)
        for sku in remove_skus:
            if sku in current:
                current.remove(sku)
        return {"id": user_id}

    # -- groups ----------------------------------------------------------
    def get_group(self, group_id: str, select: Optional[str] = None) -> Dict[str, Any]:
        self._check("get_group", group_id)
        if group_id not in self.groups:
            raise GraphError(404, "Request_ResourceNotFound", f"Resource '{group_id}' does not exist.")
        return dict(self.groups[group_id])

    def list_security_groups(self, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        groups = [dict(group) for group in self.groups.values()]
        if prefix:
            groups = [group for group in groups if group["displayName"].startswith(prefix)]
        return groups

    def list_group_members(self, group_id: str, select: Optional[str] = None) -> List[Dict[str, Any]]:
        self._check("list_group_members", group_id)
        return [dict(self.users[user_id]) for user_id in self.members.get(group_id, []) if user_id in self.users]

    def count_group_members(self, group_id: str) -> int:
        self._check("count_group_members", group_id)
        return len(self.members.get(group_id, []))

    def add_user_to_group(self, user_id: str, group_id: str) -> None:
        self._check("add_user_to_group", f"{user_id}:{group_id}")
        members = self.members.setdefault(group_id, [])
        if user_id not in members:
            members.append(user_id)

    def remove_user_from_group(self, user_id: str, group_id: str) -> None:
        self._check("remove_user_from_group", f"{user_id}:{group_id}")
        members = self.members.get(group_id, [])
        if user_id not in members:
            raise GraphError(404, "Request_ResourceNotFound", "Member not found in group.")
        members.remove(user_id)


@pytest.fixture
def graph() -> FakeGraphClient:
    return FakeGraphClient()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        graph=GraphConfig(usage_location="NO"),
        directory=DirectoryConfig(student_group_id="all-students", tenant_domain="school.test"),
        storage=StorageConfig(data_dir=tmp_path / "data"),
    )


@pytest.fixture
def stores(app_config) -> Stores:
    return Stores.from_config(app_config)
