from __future__ import annotations

import logging

import azure.functions as func

from crm_shared import issue_session_token, parse_body, run_request
from function_app import app
from services.crm_errors import ConfigurationError, Unauthenticated, ValidationError
from services.crm_rbac import navigation_map, permission_map
from services.crm_store import write_activity
from services.tenant_scope import TenantScope
from services.user_service import authenticate, change_own_password, get_own_profile, serialize_user
from shared.db import User

logger = logging.getLogger(__name__)


def _session_payload(principal_role, user_payload):
    return {
        "user": user_payload,
        "permissions": permission_map(principal_role),
        "navigation": navigation_map(principal_role),
    }


@app.function_name(name="AuthLogin")
@app.route(route="auth/login", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_login(req: func.HttpRequest) -> func.HttpResponse:
    body = parse_body(req)

    def handler(db, _principal):
        email = str(body.get("email") or "").strip().lower()
        password = body.get("password")
        if not email or not password:
            raise ValidationError("email and password are required")
        user = authenticate(db, email, password)
        if user is None:
            raise Unauthenticated("Invalid credentials")
        token, expires_at = issue_session_token(user)
        if not token:
            raise ConfigurationError("session secret is not configured")
        write_activity(
            TenantScope(company_id=str(user.company_id)),
            user_id=str(user.id),
            action="login",
            resource_type="User",
            resource_id=str(user.id),
            description=f"User {user.id} login",
        )
        logger.info("User %s signed in", user.id)
        payload = _session_payload(user.role, serialize_user(user))
        payload.update({"token": token, "expiresAt": expires_at})
        return payload, 200

    return run_request(req, ["POST"], handler, operation="Login", authenticated=False)


@app.function_name(name="AuthMe")
@app.route(route="auth/me", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_me(req: func.HttpRequest) -> func.HttpResponse:
    def handler(db, principal):
        return _session_payload(principal.role, get_own_profile(db, principal)), 200

    return run_request(req, ["GET"], handler, operation="Session lookup")


@app.function_name(name="AuthPassword")
@app.route(route="auth/password", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_password(req: func.HttpRequest) -> func.HttpResponse:
    body = parse_body(req)

    def handler(db, principal):
        change_own_password(db, principal, body.get("currentPassword"), body.get("newPassword"))
        return {"message": "Password updated"}, 200

    return run_request(req, ["POST"], handler, operation="Password change")


@app.function_name(name="AuthRefresh")
@app.route(route="auth/refresh", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_refresh(req: func.HttpRequest) -> func.HttpResponse:
    def handler(db, principal):
        # The principal was just re-read from the users table, so the new
        # token reflects the current company and active flag.
        user = db.get(User, int(principal.id))
        token, expires_at = issue_session_token(user)
        if not token:
            raise ConfigurationError("session secret is not configured")
        payload = _session_payload(principal.role, serialize_user(user))
        payload.update({"token": token, "expiresAt": expires_at})
        return payload, 200

    return run_request(req, ["POST"], handler, operation="Session refresh")
