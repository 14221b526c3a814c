from __future__ import annotations

import logging

import azure.functions as func

from crm_shared import parse_body, run_request
from function_app import app
from services.company_service import export_backup, get_settings, update_settings
from services.user_service import create_user, delete_user, get_user, list_users, update_user

logger = logging.getLogger(__name__)


@app.function_name(name="AdminUsers")
@app.route(route="admin/users", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def admin_users(req: func.HttpRequest) -> func.HttpResponse:
    body = parse_body(req)

    def handler(db, principal):
        if req.method == "GET":
            users = list_users(
                db,
                principal,
                role=req.params.get("role"),
                search=req.params.get("search"),
                include_inactive=str(req.params.get("includeInactive") or "true").lower() != "false",
            )
            return {"items": users}, 200
        user, generated_password = create_user(db, principal, body)
        payload = {"user": user}
        if generated_password:
            payload["generatedPassword"] = generated_password
        return payload, 201

    return run_request(req, ["GET", "POST"], handler, operation="Admin users")


@app.function_name(name="AdminUserItem")
@app.route(route="admin/users/{id}", methods=["GET", "PUT", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def admin_user_item(req: func.HttpRequest) -> func.HttpResponse:
    user_id = req.route_params.get("id")
    body = parse_body(req)

    def handler(db, principal):
        if req.method == "GET":
            return get_user(db, principal, user_id), 200
        if req.method == "PUT":
            return update_user(db, principal, user_id, body), 200
        delete_user(db, principal, user_id)
        return {"id": user_id, "deleted": True}, 200

    return run_request(req, ["GET", "PUT", "DELETE"], handler, operation="Admin user item")


@app.function_name(name="AdminSettings")
@app.route(route="admin/settings", methods=["GET", "PUT", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def admin_settings(req: func.HttpRequest) -> func.HttpResponse:
    body = parse_body(req)

    def handler(db, principal):
        if req.method == "GET":
            return get_settings(db, principal), 200
        return update_settings(db, principal, body), 200

    return run_request(req, ["GET", "PUT"], handler, operation="Admin settings")


@app.function_name(name="AdminSettingsBackup")
@app.route(route="admin/settings/backup", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def admin_settings_backup(req: func.HttpRequest) -> func.HttpResponse:
    return run_request(
        req,
        ["POST"],
        lambda db, principal: (export_backup(db, principal), 200),
        operation="Settings backup",
    )
