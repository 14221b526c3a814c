from __future__ import annotations

import azure.functions as func

from crm_shared import CsvExport, run_request
from function_app import app
from services.dashboards import build_dashboard, build_report, report_rows, reports_overview


@app.function_name(name="Dashboard")
@app.route(route="dashboard", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def dashboard(req: func.HttpRequest) -> func.HttpResponse:
    return run_request(
        req,
        ["GET"],
        lambda db, principal: (build_dashboard(db, principal), 200),
        operation="Dashboard",
    )


@app.function_name(name="Reports")
@app.route(route="reports", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def reports(req: func.HttpRequest) -> func.HttpResponse:
    return run_request(
        req,
        ["GET"],
        lambda db, principal: (reports_overview(principal), 200),
        operation="Reports overview",
    )


@app.function_name(name="ReportEntity")
@app.route(route="reports/{entity}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def report_entity(req: func.HttpRequest) -> func.HttpResponse:
    entity = str(req.route_params.get("entity") or "").strip().lower().rstrip("s")
    export_csv = str(req.params.get("format") or "").strip().lower() == "csv"

    def handler(db, principal):
        if export_csv:
            return CsvExport(rows=report_rows(principal, entity), filename=f"{entity}s-report.csv")
        return build_report(principal, entity), 200

    return run_request(req, ["GET"], handler, operation="Entity report")
