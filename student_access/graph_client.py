"""Microsoft Graph helper utilities."""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import msal
import requests

from .config import GraphConfig


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30
MAX_ATTEMPTS = 3
PAGE_SIZE = 999
USER_ODATA_TYPE = "#microsoft.graph.user"
GROUP_ODATA_TYPE = "#microsoft.graph.group"
STUDENT_SELECT = "id,displayName,userPrincipalName,accountEnabled,mail,jobTitle,department"
STAFF_SELECT = (
    "id,displayName,userPrincipalName,mail,accountEnabled,jobTitle,department,"
    "officeLocation,mobilePhone,assignedLicenses,createdDateTime"
)

logger = logging.getLogger(__name__)


class GraphClientError(RuntimeError):
    """Base exception for Microsoft Graph client operations."""


class GraphConfigurationError(GraphClientError):
    """Raised when the Graph integration is not configured."""


class GraphError(GraphClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


@dataclass(frozen=True)
class CatalogSnapshot:
    fetched_at: datetime
    skus: List[Dict[str, Any]]
    stale: bool


def _escape(value: str) -> str:
    return value.replace("'", "''")


class GraphClient:
    """Microsoft Graph client using app-only (client credentials) tokens."""

    def __init__(self, config: GraphConfig, session: Optional[requests.Session] = None) -> None:
        if not config.has_credentials:
            raise GraphConfigurationError(
                "Microsoft Graph credentials are not configured. "
                "Provide tenant_id, client_id, and client_secret."
            )

        self._config = config
        self._authority = f"https://login.microsoftonline.com/{config.tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=self._authority,
        )
        self._token_lock = threading.Lock()
        self._session = session or requests.Session()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        with self._token_lock:
            result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
            if not result:
                result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)

        if "access_token" not in result:
            raise GraphError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = self._session.request(
                    method,
                    url,
                    timeout=REQUEST_TIMEOUT,
                    headers=headers,
                    **kwargs,
                )
            except requests.RequestException as exc:
                logger.warning("Graph request %s %s failed: %s", method, url, exc)
                raise GraphClientError(f"Graph request {method} {url} failed: {exc}") from exc
            if response.status_code not in (429, 503) or attempt == MAX_ATTEMPTS:
                return response
            try:
                delay = float(response.headers.get("Retry-After", attempt * 2))
            except ValueError:
                delay = attempt * 2
            logger.warning(
                "Graph throttled %s %s (status=%s); retrying in %ss",
                method,
                url,
                response.status_code,
                delay,
            )
            time.sleep(delay)
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.status_code < 400:
            return
        try:
            payload = response.json()
            error = payload.get("error", {})
            code = error.get("code", "GraphError")
            message = error.get("message", response.text)
        except ValueError:
            code = "GraphError"
            message = response.text or "Unknown Graph error."
        raise GraphError(response.status_code, code, message)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = path if path.startswith("https://") else GRAPH_BASE_URL + path
        response = self._send(method, url, **kwargs)
        if response.status_code == 204:
            return {}
        self._raise_for_status(response)
        if not response.content:
            return {}
        content_type = response.headers.get("Content-Type", "")
        if content_type.startswith("text/plain"):
            return int(response.text.strip() or 0)
        return response.json()

    def _paged(self, path: str, **kwargs: Any) -> Iterator[Dict[str, Any]]:
        """Yield every item of a collection, following ``@odata.nextLink``."""

        url: Optional[str] = path
        while url:
            payload = self._request("GET", url, **kwargs)
            for item in payload.get("value", []):
                yield item
            url = payload.get("@odata.nextLink")
            # The next link already carries the query string.
            kwargs.pop("params", None)

    # ------------------------------------------------------------------ #
    # Users                                                              #
    # ------------------------------------------------------------------ #
    def get_user(self, user_id: str, select: Optional[str] = None) -> Dict[str, Any]:
        params = {"$select": select} if select else None
        return self._request("GET", f"/users/{user_id}", params=params)

    def find_user(self, query: str, select: Optional[str] = None) -> Optional[Dict[str, Any]]:
        cleaned = (query or "").strip()
        if not cleaned:
            return None
        escaped = _escape(cleaned)
        params = {"$filter": f"userPrincipalName eq '{escaped}' or mail eq '{escaped}'"}
        if select:
            params["$select"] = select
        result = self._request("GET", "/users", params=params)
        values = result.get("value") or []
        return values[0] if values else None

    def list_users(self, filter_expr: Optional[str] = None, select: str = STAFF_SELECT) -> List[Dict[str, Any]]:
        params = {"$select": select, "$top": "200", "$count": "true"}
        if filter_expr:
            params["$filter"] = filter_expr
        headers = {"ConsistencyLevel": "eventual"}
        return list(self._paged("/users", params=params, headers=headers))

    def create_user(self, **fields: Any) -> Dict[str, Any]:
        payload = {key: value for key, value in fields.items() if value is not None}
        return self._request("POST", "/users", json=payload)

    def update_user(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        payload = {key: value for key, value in fields.items() if value is not None}
        if not payload:
            return {}
        return self._request("PATCH", f"/users/{user_id}", json=payload)

    def set_account_enabled(self, user_id: str, enabled: bool) -> None:
        self._request("PATCH", f"/users/{user_id}", json={"accountEnabled": enabled})

    def revoke_sign_in_sessions(self, user_id: str) -> None:
        self._request("POST", f"/users/{user_id}/revokeSignInSessions", json={})

    def set_auto_reply(self, user_id: str, message: str) -> None:
        payload = {
            "automaticRepliesSetting": {
                "status": "alwaysEnabled",
                "internalReplyMessage": message,
                "externalReplyMessage": message,
            }
        }
        self._request("PATCH", f"/users/{user_id}/mailboxSettings", json=payload)

    def get_user_groups(self, user_id: str) -> List[Dict[str, Any]]:
        """Groups the user is a direct member of (directory roles excluded)."""

        items = self._paged(f"/users/{user_id}/memberOf", params={"$select": "id,displayName"})
        return [item for item in items if item.get("@odata.type", GROUP_ODATA_TYPE) == GROUP_ODATA_TYPE]

    # ------------------------------------------------------------------ #
    # Licences / SKU catalog                                             #
    # ------------------------------------------------------------------ #
    @property
    def cache_path(self) -> Path:
        return self._config.sku_cache_file

    @property
    def cache_ttl(self) -> timedelta:
        minutes = max(1, int(self._config.cache_ttl_minutes or 0))
        return timedelta(minutes=minutes)

    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        result = self._request(
            "GET",
            "/subscribedSkus",
            params={
                "$select": "id,skuId,skuPartNumber,capabilityStatus,prepaidUnits,appliesTo,"
                "consumedUnits,servicePlans",
            },
        )
        return result.get("value", [])

    def get_sku_catalog(self, force_refresh: bool = False) -> CatalogSnapshot:
        cached = self.peek_cached_catalog()
        if cached and not force_refresh and not cached.stale:
            return cached

        skus = self.list_subscribed_skus()
        snapshot = CatalogSnapshot(
            fetched_at=datetime.now(timezone.utc),
            skus=skus,
            stale=False,
        )
        self._write_catalog(snapshot)
        return snapshot

    def peek_cached_catalog(self) -> Optional[CatalogSnapshot]:
        data = self._read_catalog()
        if not data:
            return None
        fetched_at = self._parse_timestamp(data.get("fetched_at"))
        if not fetched_at:
            return None
        stale = datetime.now(timezone.utc) - fetched_at > self.cache_ttl
        skus = data.get("skus") or []
        return CatalogSnapshot(fetched_at=fetched_at, skus=skus, stale=stale)

    def assign_licenses(
        self,
        user_id: str,
        add_skus: Iterable[str] = (),
        remove_skus: Iterable[str] = (),
    ) -> Dict[str, Any]:
        payload = {
            "addLicenses": [{"skuId": sku_id, "disabledPlans": []} for sku_id in add_skus],
            "removeLicenses": list(remove_skus),
        }
        return self._request("POST", f"/users/{user_id}/assignLicense", json=payload)

    # ------------------------------------------------------------------ #
    # Groups                                                             #
    # ------------------------------------------------------------------ #
    def get_group(self, group_id: str, select: str = "id,displayName,description") -> Dict[str, Any]:
        return self._request("GET", f"/groups/{group_id}", params={"$select": select})

    def list_security_groups(self, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        filter_expr = "securityEnabled eq true"
        if prefix:
            filter_expr += f" and startsWith(displayName,'{_escape(prefix)}')"
        params = {
            "$filter": filter_expr,
            "$select": "id,displayName,description",
            "$top": "200",
            "$count": "true",
        }
        return list(self._paged("/groups", params=params, headers={"ConsistencyLevel": "eventual"}))

    def list_group_members(self, group_id: str, select: str = STUDENT_SELECT) -> List[Dict[str, Any]]:
        """User members of a group across all result pages."""

        params = {"$select": select, "$top": str(PAGE_SIZE)}
        members = self._paged(f"/groups/{group_id}/members", params=params)
        return [member for member in members if member.get("@odata.type", USER_ODATA_TYPE) == USER_ODATA_TYPE]

    def count_group_members(self, group_id: str) -> int:
        result = self._request(
            "GET",
            f"/groups/{group_id}/members/$count",
            headers={"ConsistencyLevel": "eventual"},
        )
        return result if isinstance(result, int) else 0

    def add_user_to_group(self, user_id: str, group_id: str) -> None:
        payload = {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{user_id}"}
        self._request("POST", f"/groups/{group_id}/members/$ref", json=payload)

    def remove_user_from_group(self, user_id: str, group_id: str) -> None:
        self._request("DELETE", f"/groups/{group_id}/members/{user_id}/$ref")

    # ------------------------------------------------------------------ #
    # Cache read/write helpers                                           #
    # ------------------------------------------------------------------ #
    def _read_catalog(self) -> Optional[Dict[str, Any]]:
        path = self.cache_path
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError):
            return None

    def _write_catalog(self, snapshot: CatalogSnapshot) -> None:
        payload = {
            "fetched_at": snapshot.fetched_at.isoformat(),
            "skus": snapshot.skus,
        }
        path = self.cache_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)

    @staticmethod
    def _parse_timestamp(raw: Any) -> Optional[datetime]:
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(str(raw))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)


__all__ = [
    "CatalogSnapshot",
    "GraphClient",
    "GraphClientError",
    "GraphConfigurationError",
    "GraphError",
]
