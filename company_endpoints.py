from __future__ import annotations

import azure.functions as func

from crm_shared import parse_body, run_request
from function_app import app
from services.company_service import get_company, setup_company, update_company


@app.function_name(name="Company")
@app.route(route="company", methods=["GET", "PUT", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def company(req: func.HttpRequest) -> func.HttpResponse:
    body = parse_body(req)

    def handler(db, principal):
        if req.method == "GET":
            return get_company(db, principal), 200
        return update_company(db, principal, body), 200

    return run_request(req, ["GET", "PUT"], handler, operation="Company profile")


@app.function_name(name="CompanySetup")
@app.route(route="company/setup", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def company_setup(req: func.HttpRequest) -> func.HttpResponse:
    # Runs before any tenant or user exists, so no session is required.
    body = parse_body(req)
    return run_request(
        req,
        ["POST"],
        lambda db, _principal: (setup_company(db, body), 201),
        operation="Company setup",
        authenticated=False,
    )
