from __future__ import annotations

import logging
from typing import Any, Dict

import azure.functions as func

from crm_shared import get_limit, parse_body, run_request
from function_app import app
from services.crm_service import (
    POLICIES,
    add_customer_note,
    approve_deal,
    assign_lead,
    convert_lead,
    create_record,
    delete_record,
    get_record,
    leads_kanban,
    list_records,
    unassign_lead,
    update_record,
)

logger = logging.getLogger(__name__)

_BOOLEAN_FILTERS = {"isActive"}


def _list_filters(req: func.HttpRequest, entity_type: str, principal) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    for key in POLICIES[entity_type].filterable:
        raw = req.params.get(key)
        if raw is None or raw == "":
            continue
        if key in _BOOLEAN_FILTERS:
            filters[key] = str(raw).strip().lower() in {"1", "true", "yes"}
        else:
            filters[key] = raw
    if str(req.params.get("mine") or "").strip().lower() in {"1", "true", "yes"}:
        filters["assignedTo"] = principal.id
    return filters


def _collection(req: func.HttpRequest, entity_type: str) -> func.HttpResponse:
    body = parse_body(req)

    def handler(db, principal):
        if req.method == "GET":
            items, next_cursor = list_records(
                principal,
                entity_type,
                filters=_list_filters(req, entity_type, principal),
                search=req.params.get("search"),
                limit=get_limit(req),
                cursor=req.params.get("cursor"),
            )
            return {"items": items, "nextCursor": next_cursor}, 200
        return create_record(db, principal, entity_type, body), 201

    return run_request(req, ["GET", "POST"], handler, operation=f"CRM {entity_type} collection")


def _item(req: func.HttpRequest, entity_type: str) -> func.HttpResponse:
    record_id = req.route_params.get("id")
    body = parse_body(req)

    def handler(db, principal):
        if req.method == "GET":
            return get_record(principal, entity_type, record_id), 200
        if req.method == "PUT":
            return update_record(db, principal, entity_type, record_id, body), 200
        delete_record(principal, entity_type, record_id)
        return {"id": record_id, "deleted": True}, 200

    return run_request(req, ["GET", "PUT", "DELETE"], handler, operation=f"CRM {entity_type} item")


@app.function_name(name="CrmLeads")
@app.route(route="crm/leads", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_leads(req: func.HttpRequest) -> func.HttpResponse:
    return _collection(req, "lead")


@app.function_name(name="CrmLeadsKanban")
@app.route(route="crm/leads/kanban", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_leads_kanban(req: func.HttpRequest) -> func.HttpResponse:
    return run_request(req, ["GET"], lambda db, principal: (leads_kanban(principal), 200), operation="Lead kanban")


@app.function_name(name="CrmLeadItem")
@app.route(route="crm/leads/{id}", methods=["GET", "PUT", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_item(req: func.HttpRequest) -> func.HttpResponse:
    return _item(req, "lead")


@app.function_name(name="CrmLeadAssignment")
@app.route(route="crm/leads/{id}/assignment", methods=["POST", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_assignment(req: func.HttpRequest) -> func.HttpResponse:
    lead_id = req.route_params.get("id")
    body = parse_body(req)

    def handler(db, principal):
        if req.method == "DELETE":
            return unassign_lead(principal, lead_id), 200
        return assign_lead(db, principal, lead_id, body.get("assignedTo") or body.get("userId")), 200

    return run_request(req, ["POST", "DELETE"], handler, operation="Lead assignment")


@app.function_name(name="CrmLeadConvert")
@app.route(route="crm/leads/{id}/convert", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_convert(req: func.HttpRequest) -> func.HttpResponse:
    lead_id = req.route_params.get("id")
    return run_request(
        req,
        ["POST"],
        lambda db, principal: (convert_lead(principal, lead_id), 201),
        operation="Lead conversion",
    )


@app.function_name(name="CrmCustomers")
@app.route(route="crm/customers", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customers(req: func.HttpRequest) -> func.HttpResponse:
    return _collection(req, "customer")


@app.function_name(name="CrmCustomerItem")
@app.route(route="crm/customers/{id}", methods=["GET", "PUT", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customer_item(req: func.HttpRequest) -> func.HttpResponse:
    return _item(req, "customer")


@app.function_name(name="CrmCustomerNotes")
@app.route(route="crm/customers/{id}/notes", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customer_notes(req: func.HttpRequest) -> func.HttpResponse:
    customer_id = req.route_params.get("id")
    body = parse_body(req)
    return run_request(
        req,
        ["POST"],
        lambda db, principal: (add_customer_note(principal, customer_id, body), 201),
        operation="Customer note",
    )


@app.function_name(name="CrmDeals")
@app.route(route="crm/deals", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_deals(req: func.HttpRequest) -> func.HttpResponse:
    return _collection(req, "deal")


@app.function_name(name="CrmDealItem")
@app.route(route="crm/deals/{id}", methods=["GET", "PUT", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_deal_item(req: func.HttpRequest) -> func.HttpResponse:
    return _item(req, "deal")


@app.function_name(name="CrmDealApprove")
@app.route(route="crm/deals/{id}/approve", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_deal_approve(req: func.HttpRequest) -> func.HttpResponse:
    deal_id = req.route_params.get("id")
    return run_request(
        req,
        ["POST"],
        lambda db, principal: (approve_deal(principal, deal_id), 200),
        operation="Deal approval",
    )


@app.function_name(name="CrmTasks")
@app.route(route="crm/tasks", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_tasks(req: func.HttpRequest) -> func.HttpResponse:
    return _collection(req, "task")


@app.function_name(name="CrmTaskItem")
@app.route(route="crm/tasks/{id}", methods=["GET", "PUT", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_task_item(req: func.HttpRequest) -> func.HttpResponse:
    return _item(req, "task")
