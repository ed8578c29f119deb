"""Flask JSON API for the student access portal."""
from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import msal
import requests
from flask import Flask, g, jsonify, redirect, request, session, url_for
from flask import has_request_context
from werkzeug.exceptions import HTTPException

from . import enforcement, groups, staff, students
from .audit import DEFAULT_QUERY_LIMIT
from .config import AppConfig, AuthConfig, ConfigurationError, ensure_default_config, load_config
from .context import Stores
from .errors import NotFoundError, PermissionDenied, PortalError, ValidationError
from .graph_client import GraphClient, GraphClientError, GraphConfigurationError, GraphError
from .models import parse_datetime


_AUTH_EXEMPT_ENDPOINTS = {"login", "logout", "auth_callback", "static", "index"}
_DEFAULT_AUTH_SCOPES = ("https://graph.microsoft.com/User.Read",)
_RESERVED_AUTH_SCOPES = {"openid", "profile", "offline_access"}

# camelCase request fields accepted by PATCH /api/policies/<id>.
_POLICY_FIELDS = {
    "name": "name",
    "description": "description",
    "enableTime": "enable_time",
    "disableTime": "disable_time",
    "daysOfWeek": "days_of_week",
    "timezone": "timezone",
    "isActive": "is_active",
    "assignedGroupIds": "assigned_group_ids",
}
_SPECIAL_GROUP_FIELDS = {
    "groupName": "group_name",
    "description": "description",
    "policyId": "policy_id",
    "priority": "priority",
}


def create_app(config_path: Optional[Path | str] = None) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    ensure_default_config(resolved_config_path)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("STUDENT_PORTAL_SECRET", "student-access-secret")
    app.config["CONFIG_PATH"] = resolved_config_path
    app.json.sort_keys = False

    register_routes(app)
    return app


def _ok(data: Any, status: int = 200) -> Tuple[Any, int]:
    return jsonify({"success": True, "data": data}), status


def _fail(message: str, status: int) -> Tuple[Any, int]:
    return jsonify({"success": False, "error": message}), status


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def register_routes(app: Flask) -> None:
    """Attach all web routes to the provided Flask app."""

    @app.before_request
    def _enforce_authentication() -> Optional[Any]:
        config = _load_app_config(app)
        current_user = session.get("user")
        g.current_user = current_user
        if not config.auth.enabled:
            return None

        endpoint = request.endpoint or ""
        if endpoint.startswith("static") or endpoint in _AUTH_EXEMPT_ENDPOINTS:
            return None

        if current_user:
            return None

        if request.path.startswith("/api/"):
            return _fail("Unauthorized", 401)
        session["post_login_redirect"] = request.url
        return redirect(url_for("login"))

    # ------------------------------------------------------------------ #
    # Error mapping                                                      #
    # ------------------------------------------------------------------ #
    @app.errorhandler(PortalError)
    def _portal_error(exc: PortalError) -> Any:
        return _fail(str(exc), exc.status_code)

    @app.errorhandler(GraphConfigurationError)
    def _graph_not_configured(exc: GraphConfigurationError) -> Any:
        return _fail(str(exc), 503)

    @app.errorhandler(GraphError)
    def _graph_error(exc: GraphError) -> Any:
        app.logger.error("Graph request failed: %s", exc)
        if exc.status_code == 404:
            return _fail(exc.description or "Not found", 404)
        return _fail(str(exc), 502)

    @app.errorhandler(GraphClientError)
    def _graph_client_error(exc: GraphClientError) -> Any:
        app.logger.error("Graph client failure: %s", exc)
        return _fail(str(exc), 502)

    @app.errorhandler(ConfigurationError)
    def _configuration_error(exc: ConfigurationError) -> Any:
        return _fail(str(exc), 500)

    @app.errorhandler(Exception)
    def _unexpected_error(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return _fail(exc.description or exc.name, exc.code or 500)
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return _fail(str(exc) or "Unknown error", 500)

    # ------------------------------------------------------------------ #
    # Sign-in                                                            #
    # ------------------------------------------------------------------ #
    @app.route("/")
    def index() -> Any:
        config = _load_app_config(app)
        return _ok(
            {
                "service": "student-access-portal",
                "authEnabled": config.auth.enabled,
                "user": session.get("user"),
                "graphConfigured": config.graph.has_credentials,
            }
        )

    @app.route("/login")
    def login() -> Any:
        config = _load_app_config(app)
        if not config.auth.enabled:
            return redirect(url_for("index"))
        if not config.auth.has_credentials:
            return _fail("Authentication is enabled but not fully configured.", 500)

        state = secrets.token_urlsafe(32)
        session["auth_state"] = state
        next_url = request.args.get("next") or session.get("post_login_redirect") or url_for("index")
        session["post_login_redirect"] = next_url

        client = _build_msal_client(config.auth)
        redirect_uri = _auth_redirect_uri(config.auth)
        requested_scopes = list(config.auth.scopes or _DEFAULT_AUTH_SCOPES)
        scopes = [scope for scope in requested_scopes if scope.lower() not in _RESERVED_AUTH_SCOPES]
        if not scopes:
            scopes = list(_DEFAULT_AUTH_SCOPES)
        auth_url = client.get_authorization_request_url(
            scopes=scopes,
            state=state,
            redirect_uri=redirect_uri,
            prompt="select_account",
        )
        return redirect(auth_url)

    @app.route("/logout")
    def logout() -> Any:
        session.clear()
        return redirect(url_for("index"))

    @app.route("/auth/callback")
    def auth_callback() -> Any:
        config = _load_app_config(app)
        if not config.auth.enabled:
            return redirect(url_for("index"))

        expected_state = session.get("auth_state")
        if not expected_state or expected_state != request.args.get("state"):
            return _fail("Authentication response could not be validated. Please try again.", 400)
        session.pop("auth_state", None)

        if "error" in request.args:
            return _fail(request.args.get("error_description") or "Sign-in was cancelled.", 401)

        code = request.args.get("code")
        if not code:
            return _fail("Missing authorization code.", 400)

        client = _build_msal_client(config.auth)
        token_result = client.acquire_token_by_authorization_code(
            code,
            scopes=list(config.auth.scopes or _DEFAULT_AUTH_SCOPES),
            redirect_uri=_auth_redirect_uri(config.auth),
        )
        if "access_token" not in token_result:
            app.logger.error(
                "Auth callback: token acquisition failed (error=%s, error_description=%s, correlation_id=%s)",
                token_result.get("error"),
                token_result.get("error_description"),
                token_result.get("correlation_id"),
            )
            return _fail(token_result.get("error_description") or "Unable to complete sign-in.", 401)

        claims = token_result.get("id_token_claims") or {}
        subject = claims.get("preferred_username") or claims.get("oid") or "unknown"
        allowed_groups = set(config.auth.allowed_groups or [])
        user_groups = _extract_user_groups(claims, token_result, app.logger)
        if allowed_groups and user_groups.isdisjoint(allowed_groups):
            app.logger.warning(
                "Auth callback: denying user=%s oid=%s (required groups=%s)",
                subject,
                claims.get("oid"),
                sorted(allowed_groups),
            )
            return _fail("You do not have access to this application.", 403)

        session["user"] = {
            "name": claims.get("name") or claims.get("preferred_username") or "Signed-in user",
            "upn": claims.get("preferred_username") or claims.get("email"),
            "oid": claims.get("oid"),
            "groups": list(user_groups),
        }
        app.logger.info("Auth callback: signed in %s", subject)
        return redirect(session.pop("post_login_redirect", url_for("index")))

    # ------------------------------------------------------------------ #
    # Dashboard / groups                                                 #
    # ------------------------------------------------------------------ #
    @app.get("/api/dashboard")
    def api_dashboard() -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        return _ok(groups.dashboard(_require_graph_client(app, config), stores, config.directory))

    @app.get("/api/groups")
    def api_groups() -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        return _ok(groups.list_managed_groups(_require_graph_client(app, config), stores, config.directory))

    @app.get("/api/groups/<group_id>/access")
    def api_group_access(group_id: str) -> Any:
        config = _load_app_config(app)
        return _ok(groups.group_access(_get_stores(app, config), group_id))

    # ------------------------------------------------------------------ #
    # Students                                                           #
    # ------------------------------------------------------------------ #
    @app.get("/api/students")
    def api_students() -> Any:
        config = _load_app_config(app)
        result = students.list_students(
            _require_graph_client(app, config),
            _get_stores(app, config),
            config.directory,
            group_id=request.args.get("groupId") or None,
            status=request.args.get("status") or None,
            policy_id=request.args.get("policyId") or None,
            search=request.args.get("search") or None,
        )
        return _ok(result)

    @app.patch("/api/students")
    def api_students_bulk() -> Any:
        config = _load_app_config(app)
        body = _json_body()
        result = students.bulk_set_access(
            _require_graph_client(app, config),
            _get_stores(app, config),
            config.directory,
            body.get("action"),
            body.get("studentIds"),
            _current_actor(),
        )
        return _ok(result)

    @app.post("/api/students/create")
    def api_students_create() -> Any:
        config = _load_app_config(app)
        body = _json_body()
        result = students.create_student(
            _require_graph_client(app, config),
            _get_stores(app, config),
            config.directory,
            config.graph,
            first_name=str(body.get("firstName") or ""),
            last_name=str(body.get("lastName") or ""),
            group_id=str(body.get("groupId") or ""),
            actor=_current_actor(),
            department=body.get("department"),
        )
        return _ok(result, 201)

    @app.post("/api/students/bulk/promote")
    def api_students_promote() -> Any:
        config = _load_app_config(app)
        body = _json_body()
        promotions = body.get("promotions")
        if not isinstance(promotions, list):
            raise ValidationError("promotions array is required with at least one entry")
        result = students.bulk_promote(
            _require_graph_client(app, config), _get_stores(app, config), promotions, _current_actor()
        )
        return _ok(result)

    @app.get("/api/students/<student_id>")
    def api_student(student_id: str) -> Any:
        config = _load_app_config(app)
        return _ok(students.get_student(_require_graph_client(app, config), student_id))

    @app.patch("/api/students/<student_id>")
    def api_student_toggle(student_id: str) -> Any:
        config = _load_app_config(app)
        body = _json_body()
        result = students.set_access(
            _require_graph_client(app, config),
            _get_stores(app, config),
            student_id,
            body.get("accountEnabled"),
            _current_actor(),
        )
        return _ok(result)

    @app.delete("/api/students/<student_id>")
    def api_student_remove(student_id: str) -> Any:
        config = _load_app_config(app)
        result = students.remove_student(
            _require_graph_client(app, config),
            _get_stores(app, config),
            config.directory,
            student_id,
            _current_actor(),
        )
        return _ok(result)

    @app.get("/api/students/<student_id>/access")
    def api_student_access(student_id: str) -> Any:
        config = _load_app_config(app)
        decision = students.explain_access(
            _require_graph_client(app, config), _get_stores(app, config), student_id
        )
        return _ok(decision.to_dict())

    @app.get("/api/students/<student_id>/suspend")
    def api_student_suspension(student_id: str) -> Any:
        config = _load_app_config(app)
        suspension = _get_stores(app, config).suspensions.active_for(student_id)
        return _ok(suspension.to_dict() if suspension else None)

    @app.post("/api/students/<student_id>/suspend")
    def api_student_suspend(student_id: str) -> Any:
        config = _load_app_config(app)
        body = _json_body()
        suspension = students.suspend(
            _require_graph_client(app, config),
            _get_stores(app, config),
            student_id,
            body.get("reason"),
            body.get("endDate"),
            _current_actor(),
        )
        return _ok(suspension.to_dict())

    @app.delete("/api/students/<student_id>/suspend")
    def api_student_unsuspend(student_id: str) -> Any:
        config = _load_app_config(app)
        result = students.lift_suspension(
            _require_graph_client(app, config), _get_stores(app, config), student_id, _current_actor()
        )
        result["message"] = "Suspension lifted, account re-enabled"
        return _ok(result)

    @app.post("/api/students/<student_id>/transfer")
    def api_student_transfer(student_id: str) -> Any:
        config = _load_app_config(app)
        body = _json_body()
        result = students.transfer(
            _require_graph_client(app, config),
            _get_stores(app, config),
            student_id,
            body.get("fromGroupId"),
            body.get("toGroupId"),
            _current_actor(),
        )
        return _ok(result)

    @app.route("/api/students/<student_id>/groups", methods=["POST", "DELETE"])
    def api_student_group_change(student_id: str) -> Any:
        config = _load_app_config(app)
        body = _json_body()
        group_id = body.get("groupId")
        if not group_id:
            raise ValidationError("groupId is required")
        adding = request.method == "POST"
        change = students.queue_group_change(
            _get_stores(app, config),
            student_id,
            "add" if adding else "remove",
            group_id,
            _current_actor(),
            student_name=body.get("studentName"),
            group_name=body.get("groupName"),
            reason=body.get("reason") or ("special_group" if adding else "manual"),
        )
        target = body.get("groupName") or group_id
        message = f"Queued: add to {target}" if adding else f"Queued: remove from {target}"
        return _ok({"message": message, "change": change.to_dict()})

    # ------------------------------------------------------------------ #
    # Policies                                                           #
    # ------------------------------------------------------------------ #
    @app.get("/api/policies")
    def api_policies() -> Any:
        config = _load_app_config(app)
        return _ok([policy.to_dict() for policy in _get_stores(app, config).policies.list()])

    @app.post("/api/policies")
    def api_policies_create() -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        body = _json_body()
        if not body.get("name") or not body.get("enableTime") or not body.get("disableTime") or not body.get("daysOfWeek"):
            raise ValidationError("Missing required fields: name, enableTime, disableTime, daysOfWeek")
        actor = _current_actor()
        policy = stores.policies.create(
            name=str(body["name"]),
            enable_time=str(body["enableTime"]),
            disable_time=str(body["disableTime"]),
            days_of_week=body["daysOfWeek"],
            description=str(body.get("description") or ""),
            timezone=body.get("timezone") or config.directory.default_timezone,
            created_by=actor,
        )
        stores.audit.log_policy_action(
            "policy_created",
            actor,
            f'Created policy "{policy.name}" ({policy.enable_time}-{policy.disable_time}, '
            f'{", ".join(policy.days_of_week)})',
        )
        return _ok(policy.to_dict(), 201)

    @app.get("/api/policies/<policy_id>")
    def api_policy(policy_id: str) -> Any:
        config = _load_app_config(app)
        policy = _get_stores(app, config).policies.get(policy_id)
        if policy is None:
            raise NotFoundError("Policy not found")
        return _ok(policy.to_dict())

    @app.patch("/api/policies/<policy_id>")
    def api_policy_update(policy_id: str) -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        body = _json_body()
        updates = {_POLICY_FIELDS[key]: value for key, value in body.items() if key in _POLICY_FIELDS}
        if "is_active" in updates and not isinstance(updates["is_active"], bool):
            raise ValidationError("isActive must be a boolean")

        if stores.policies.get(policy_id) is None:
            raise NotFoundError("Policy not found")

        client: Optional[GraphClient] = None
        if "assigned_group_ids" in updates:
            group_ids = updates["assigned_group_ids"]
            if not isinstance(group_ids, list):
                raise ValidationError("assignedGroupIds must be a list")
            # Names must line up with the ids the store keeps.
            group_ids = list(dict.fromkeys(str(item or "").strip() for item in group_ids))
            group_ids = [group_id for group_id in group_ids if group_id]
            updates["assigned_group_ids"] = group_ids
            client = _get_graph_client(app, config)
            updates["assigned_group_names"] = _group_names(app, client, group_ids)

        updated = stores.policies.update(policy_id, **updates)
        if updated is None:
            raise NotFoundError("Policy not found")

        actor = _current_actor()
        if "assigned_group_ids" in updates:
            stores.audit.log_policy_action(
                "policy_assigned",
                actor,
                f'Policy "{updated.name}" assigned to {", ".join(updated.assigned_group_names) or "no groups"}',
                target_group=", ".join(updated.assigned_group_names) or None,
            )
        stores.audit.log_policy_action(
            "policy_updated",
            actor,
            f'Updated policy "{updated.name}": {", ".join(sorted(body)) or "no fields"}',
        )

        payload = updated.to_dict()
        if updates.get("is_active") is True and updated.assigned_group_ids:
            client = client or _get_graph_client(app, config)
            if client is None:
                payload["enforcementError"] = "Microsoft Graph is not configured."
            else:
                try:
                    report = enforcement.apply_policy_now(client, stores, updated, actor=actor)
                    payload["enforcement"] = report.to_dict()
                except GraphClientError as exc:
                    app.logger.exception("Applying policy %s immediately failed", policy_id)
                    payload["enforcementError"] = str(exc)
        return _ok(payload)

    @app.delete("/api/policies/<policy_id>")
    def api_policy_delete(policy_id: str) -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        deleted = stores.policies.delete(policy_id)
        if deleted is None:
            raise NotFoundError("Policy not found")
        stores.audit.log_policy_action(
            "policy_deleted", _current_actor(), f'Deleted policy "{deleted.name}"'
        )
        return _ok({"deleted": True})

    # ------------------------------------------------------------------ #
    # Special groups                                                     #
    # ------------------------------------------------------------------ #
    @app.get("/api/special-groups")
    def api_special_groups() -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        names = {policy.id: policy.name for policy in stores.policies.list()}
        items = []
        for special in stores.special_groups.list():
            payload = special.to_dict()
            payload["policyName"] = names.get(special.policy_id, "Unknown")
            items.append(payload)
        return _ok(items)

    @app.post("/api/special-groups")
    def api_special_groups_create() -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        body = _json_body()
        policy_id = body.get("policyId")
        if not body.get("groupId") or not policy_id:
            raise ValidationError("groupId and policyId are required")
        policy = stores.policies.get(policy_id)
        if policy is None:
            raise ValidationError(f"Unknown policy '{policy_id}'")
        actor = _current_actor()
        special = stores.special_groups.create(
            group_id=body["groupId"],
            policy_id=policy_id,
            group_name=body.get("groupName"),
            description=body.get("description") or "",
            policy_name=policy.name,
            priority=_parse_priority(body.get("priority")),
            created_by=actor,
        )
        stores.audit.log_policy_action(
            "special_group_added",
            actor,
            f'Special group "{special.group_name}" created with policy "{policy.name}"',
            target_group=special.group_name,
        )
        return _ok(special.to_dict(), 201)

    @app.patch("/api/special-groups/<special_group_id>")
    def api_special_group_update(special_group_id: str) -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        body = _json_body()
        updates = {
            _SPECIAL_GROUP_FIELDS[key]: value for key, value in body.items() if key in _SPECIAL_GROUP_FIELDS
        }
        if "priority" in updates:
            updates["priority"] = _parse_priority(updates["priority"])
        if "policy_id" in updates:
            policy = stores.policies.get(updates["policy_id"])
            if policy is None:
                raise ValidationError(f"Unknown policy '{updates['policy_id']}'")
            updates["policy_name"] = policy.name
        updated = stores.special_groups.update(special_group_id, **updates)
        if updated is None:
            raise NotFoundError("Special group not found")
        return _ok(updated.to_dict())

    @app.delete("/api/special-groups/<special_group_id>")
    def api_special_group_delete(special_group_id: str) -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        deleted = stores.special_groups.delete(special_group_id)
        if deleted is None:
            raise NotFoundError("Special group not found")
        stores.audit.log_policy_action(
            "special_group_removed",
            _current_actor(),
            f'Special group "{deleted.group_name}" removed',
            target_group=deleted.group_name,
        )
        return _ok({"deleted": True})

    # ------------------------------------------------------------------ #
    # Suspensions / pending changes / audit                              #
    # ------------------------------------------------------------------ #
    @app.get("/api/suspensions")
    def api_suspensions() -> Any:
        config = _load_app_config(app)
        return _ok([item.to_dict() for item in _get_stores(app, config).suspensions.active()])

    @app.post("/api/suspensions")
    def api_suspensions_process() -> Any:
        config = _load_app_config(app)
        stores = _get_stores(app, config)
        if not stores.suspensions.expired():
            return _ok({"processed": 0, "message": "No expired suspensions to process"})
        results = enforcement.process_expired_suspensions(_require_graph_client(app, config), stores)
        return _ok(
            {
                "processed": len(results),
                "results": results,
                "message": f"Processed {len(results)} expired suspension(s)",
            }
        )

    @app.get("/api/pending-changes")
    def api_pending_changes() -> Any:
        config = _load_app_config(app)
        return _ok([change.to_dict() for change in _get_stores(app, config).pending_changes.list()])

    @app.post("/api/pending-changes")
    def api_pending_changes_create() -> Any:
        config = _load_app_config(app)
        body = _json_body()
        change = students.queue_group_change(
            _get_stores(app, config),
            body.get("studentId"),
            body.get("action"),
            body.get("groupId"),
            _current_actor(),
            student_name=body.get("studentName"),
            group_name=body.get("groupName"),
            reason=body.get("reason") or "manual",
        )
        return _ok(change.to_dict())

    @app.get("/api/audit")
    def api_audit() -> Any:
        config = _load_app_config(app)
        audit = _get_stores(app, config).audit
        if request.args.get("summary") == "true":
            days = _parse_int(request.args.get("days"), 7, "days")
            return _ok(audit.summary(since_days=days))
        entries = audit.query(
            action=request.args.get("action") or None,
            performed_by=request.args.get("performedBy") or None,
            target_user=request.args.get("targetUser") or None,
            target_group=request.args.get("targetGroup") or None,
            since=_parse_query_datetime("from"),
            until=_parse_query_datetime("to"),
            limit=_parse_int(request.args.get("limit"), DEFAULT_QUERY_LIMIT, "limit"),
        )
        return _ok([entry.to_dict() for entry in entries])

    @app.post("/api/audit")
    def api_audit_write() -> Any:
        config = _load_app_config(app)
        body = _json_body()
        if not body.get("action"):
            raise ValidationError("Missing required field: action")
        entry = _get_stores(app, config).audit.write(
            body["action"],
            _current_actor(),
            target_user=body.get("targetUser"),
            target_group=body.get("targetGroup"),
            details=body.get("details"),
        )
        return _ok(entry.to_dict(), 201)

    # ------------------------------------------------------------------ #
    # Staff                                                              #
    # ------------------------------------------------------------------ #
    @app.get("/api/staff")
    def api_staff() -> Any:
        config = _load_app_config(app)
        result = staff.list_staff(
            _require_graph_client(app, config),
            config.directory,
            search=request.args.get("search") or None,
            role=request.args.get("role") or None,
            status=request.args.get("status") or None,
        )
        return _ok(result)

    @app.get("/api/staff/licenses")
    def api_staff_licenses() -> Any:
        config = _load_app_config(app)
        refresh = request.args.get("refresh") == "1"
        return _ok(staff.list_licenses(_require_graph_client(app, config), force_refresh=refresh))

    @app.post("/api/staff/onboard")
    def api_staff_onboard() -> Any:
        config = _load_app_config(app)
        _require_admin(config)
        result = staff.onboard(
            _require_graph_client(app, config),
            _get_stores(app, config),
            config.directory,
            config.graph,
            _json_body(),
            _current_actor(),
        )
        return _ok(result, 201)

    @app.post("/api/staff/offboard")
    def api_staff_offboard() -> Any:
        config = _load_app_config(app)
        _require_admin(config)
        result = staff.offboard(
            _require_graph_client(app, config), _get_stores(app, config), _json_body(), _current_actor()
        )
        return _ok(result)


def _parse_int(raw: Optional[str], default: int, name: str) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a whole number") from exc


def _parse_priority(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("priority must be a whole number") from exc


def _parse_query_datetime(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    parsed = parse_datetime(raw)
    if parsed is None:
        raise ValidationError(f"'{name}' must be an ISO date or timestamp")
    return parsed


def _group_names(app: Flask, client: Optional[GraphClient], group_ids: list) -> list:
    """Display names for ``group_ids``; falls back to the ids when Graph is unavailable."""

    if client is None:
        return list(group_ids)
    names = []
    for group_id in group_ids:
        try:
            names.append(client.get_group(group_id, select="id,displayName").get("displayName") or group_id)
        except GraphClientError as exc:
            app.logger.warning("Could not resolve group name for %s: %s", group_id, exc)
            names.append(group_id)
    return names


def _current_actor() -> str:
    user = session.get("user") or {}
    return user.get("upn") or user.get("name") or "portal"


def _require_admin(config: AppConfig) -> None:
    """Staff on/offboarding needs membership of one of ``auth.admin_groups``."""

    if not config.auth.enabled or not config.auth.admin_groups:
        return
    user_groups = set((session.get("user") or {}).get("groups") or [])
    if user_groups.isdisjoint(config.auth.admin_groups):
        raise PermissionDenied("Admin access required")


def _get_graph_client(app: Flask, config: AppConfig) -> Optional[GraphClient]:
    override = app.config.get("GRAPH_CLIENT")
    if override is not None:
        return override

    graph_config = config.graph
    if not graph_config.has_credentials:
        return None

    signature: Tuple[Any, ...] = (
        graph_config.tenant_id,
        graph_config.client_id,
        graph_config.client_secret,
        str(graph_config.sku_cache_file),
        graph_config.cache_ttl_minutes,
    )
    cached_signature = app.config.get("_GRAPH_CONFIG_SIGNATURE")
    cached_client = app.config.get("_GRAPH_CLIENT")
    if cached_client and cached_signature == signature:
        return cached_client

    try:
        client = GraphClient(graph_config)
    except GraphConfigurationError:
        return None

    app.config["_GRAPH_CLIENT"] = client
    app.config["_GRAPH_CONFIG_SIGNATURE"] = signature
    return client


def _require_graph_client(app: Flask, config: AppConfig) -> GraphClient:
    client = _get_graph_client(app, config)
    if client is None:
        raise GraphConfigurationError("Microsoft Graph integration is not configured.")
    return client


def _get_stores(app: Flask, config: AppConfig) -> Stores:
    stores = app.config.get("_STORES")
    data_dir = config.storage.data_dir
    if stores is None or app.config.get("_STORES_DIR") != data_dir:
        stores = Stores.from_config(config)
        app.config["_STORES"] = stores
        app.config["_STORES_DIR"] = data_dir
    return stores


def _load_app_config(app: Flask) -> AppConfig:
    if has_request_context():
        cached = getattr(g, "_app_config", None)
        if cached is None:
            cached = load_config(app.config.get("CONFIG_PATH"))
            g._app_config = cached
        return cached
    return load_config(app.config.get("CONFIG_PATH"))


def _build_msal_client(auth_config: AuthConfig) -> msal.ConfidentialClientApplication:
    authority = f"https://login.microsoftonline.com/{auth_config.tenant_id or 'common'}"
    return msal.ConfidentialClientApplication(
        client_id=auth_config.client_id,
        client_credential=auth_config.client_secret,
        authority=authority,
    )


def _auth_redirect_uri(auth_config: AuthConfig) -> str:
    if auth_config.redirect_uri:
        return auth_config.redirect_uri
    base = request.url_root.rstrip("/")
    return f"{base}{url_for('auth_callback')}"


def _extract_user_groups(
    claims: Dict[str, Any],
    token_result: Dict[str, Any],
    logger: Any,
) -> set[str]:
    groups = set(claims.get("groups") or [])
    if groups:
        return groups

    claim_names = claims.get("_claim_names") or {}
    if not claim_names.get("groups"):
        return groups
    access_token = token_result.get("access_token")
    if not access_token:
        logger.warning("Auth groups: groups claim present but no access token available.")
        return groups
    try:
        return _fetch_member_groups(access_token, logger)
    except requests.RequestException as exc:
        logger.warning("Unable to fetch group membership from Graph: %s", exc)
    return groups


def _fetch_member_groups(access_token: str, logger: Any) -> set[str]:
    """Resolve group overage by paging ``/me/memberOf`` with the user's token."""

    headers = {"Authorization": f"Bearer {access_token}"}
    groups: set[str] = set()
    url: Optional[str] = "https://graph.microsoft.com/v1.0/me/memberOf?$select=id"
    while url:
        response = requests.get(url, headers=headers, timeout=10)
        if response.status_code != 200:
            logger.warning(
                "Auth groups: Graph memberOf request failed (status=%s body=%s)",
                response.status_code,
                response.text,
            )
            break
        payload = response.json()
        for entry in payload.get("value", []):
            group_id = entry.get("id")
            if group_id:
                groups.add(group_id)
        url = payload.get("@odata.nextLink")
    return groups


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("STUDENT_PORTAL_HOST", "0.0.0.0"),
        port=int(os.environ.get("STUDENT_PORTAL_PORT", "5000")),
        debug=os.environ.get("STUDENT_PORTAL_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()
