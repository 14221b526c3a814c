from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from services.crm_rbac import Permission, Role, has_permission
from services.crm_service import collect_records, get_policy, list_activity
from services.principal import Principal
from services.route_guard import admit
from services.user_service import list_team_members
from schemas.crm_schema import CLOSED_DEAL_STAGES, LEAD_STATUSES, parse_datetime_utc
from shared.db import User

logger = logging.getLogger(__name__)

REPORT_ENTITIES = ("lead", "customer", "deal", "task")

REPORT_COLUMNS: Dict[str, List[str]] = {
    "lead": ["id", "name", "email", "phone", "company", "source", "status", "priority", "assignedTo", "createdAt"],
    "customer": ["id", "name", "email", "phone", "company", "source", "isActive", "assignedTo", "createdAt"],
    "deal": [
        "id",
        "title",
        "value",
        "stage",
        "status",
        "probability",
        "customerId",
        "expectedCloseDate",
        "actualCloseDate",
        "assignedTo",
        "createdAt",
    ],
    "task": ["id", "title", "status", "priority", "dueDate", "completedAt", "assignedTo", "createdAt"],
}

# Fields summarized as counts per value in each report.
REPORT_BREAKDOWNS: Dict[str, List[str]] = {
    "lead": ["status", "source", "priority"],
    "customer": ["source"],
    "deal": ["stage", "status"],
    "task": ["status", "priority"],
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _value(deal: Dict[str, Any]) -> float:
    try:
        return float(deal.get("value") or 0)
    except (TypeError, ValueError):
        return 0.0


def _is_open_deal(deal: Dict[str, Any]) -> bool:
    return deal.get("stage") not in CLOSED_DEAL_STAGES


def _is_open_task(task: Dict[str, Any]) -> bool:
    return task.get("status") != "completed"


def _is_overdue(task: Dict[str, Any], now: datetime) -> bool:
    due = parse_datetime_utc(task.get("dueDate"))
    return bool(due and due < now and _is_open_task(task))


def _is_due_today(task: Dict[str, Any], now: datetime) -> bool:
    due = parse_datetime_utc(task.get("dueDate"))
    return bool(due and due.date() == now.date() and _is_open_task(task))


def _conversion_rate(leads: List[Dict[str, Any]]) -> float:
    if not leads:
        return 0.0
    converted = sum(1 for lead in leads if lead.get("status") == "converted")
    return round(converted / len(leads) * 100, 1)


def _recent(items: List[Dict[str, Any]], limit: int = 5) -> List[Dict[str, Any]]:
    return sorted(items, key=lambda item: str(item.get("id") or ""), reverse=True)[:limit]


def _admin_dashboard(db, principal: Principal) -> Dict[str, Any]:
    scope = admit(principal, Permission.VIEW_ALL_USERS)
    leads = collect_records(principal, "lead")
    customers = collect_records(principal, "customer")
    deals = collect_records(principal, "deal")
    tasks = collect_records(principal, "task")
    user_count = scope.apply_to_query(db.query(User), User).count()
    return {
        "totals": {
            "users": user_count,
            "leads": len(leads),
            "customers": len(customers),
            "deals": len(deals),
            "tasks": len(tasks),
        },
        "pipelineValue": sum(_value(deal) for deal in deals if _is_open_deal(deal)),
        "wonValue": sum(_value(deal) for deal in deals if deal.get("stage") == "closed_won"),
        "conversionRate": _conversion_rate(leads),
        "recentActivity": list_activity(principal, limit=10),
    }


def _manager_dashboard(db, principal: Principal) -> Dict[str, Any]:
    members = list_team_members(db, principal)
    names = {member["id"]: member["name"] for member in members}
    leads = collect_records(principal, "lead")
    deals = collect_records(principal, "deal")
    tasks = collect_records(principal, "task")

    won_by_user: Counter = Counter()
    for deal in deals:
        if deal.get("stage") == "closed_won" and deal.get("assignedTo"):
            won_by_user[str(deal["assignedTo"])] += _value(deal)
    top_performers = [
        {"userId": user_id, "name": names.get(user_id), "wonValue": value}
        for user_id, value in won_by_user.most_common(5)
    ]
    return {
        "teamMembers": len(members),
        "teamDealsValue": sum(_value(deal) for deal in deals),
        "openPipelineValue": sum(_value(deal) for deal in deals if _is_open_deal(deal)),
        "pendingTasks": sum(1 for task in tasks if _is_open_task(task)),
        "unassignedLeads": sum(1 for lead in leads if not lead.get("assignedTo")),
        "conversionRate": _conversion_rate(leads),
        "topPerformers": top_performers,
    }


def _sales_dashboard(db, principal: Principal) -> Dict[str, Any]:
    now = _now()
    leads = collect_records(principal, "lead")
    deals = collect_records(principal, "deal")
    tasks = collect_records(principal, "task")
    by_status = Counter(str(lead.get("status") or "new") for lead in leads)
    return {
        "myLeads": len(leads),
        "leadsByStatus": {status: by_status.get(status, 0) for status in LEAD_STATUSES},
        "openDealValue": sum(_value(deal) for deal in deals if _is_open_deal(deal)),
        "wonDeals": sum(1 for deal in deals if deal.get("stage") == "closed_won"),
        "tasksDueToday": sum(1 for task in tasks if _is_due_today(task, now)),
        "overdueTasks": sum(1 for task in tasks if _is_overdue(task, now)),
        "conversionRate": _conversion_rate(leads),
    }


def _support_dashboard(db, principal: Principal) -> Dict[str, Any]:
    now = _now()
    customers = collect_records(principal, "customer")
    tasks = collect_records(principal, "task")
    return {
        "customers": len(customers),
        "openTasks": sum(1 for task in tasks if _is_open_task(task)),
        "overdueTasks": sum(1 for task in tasks if _is_overdue(task, now)),
        "recentCustomers": [
            {"id": item.get("id"), "name": item.get("name"), "email": item.get("email")}
            for item in _recent(customers)
        ],
    }


DASHBOARD_BUILDERS: Dict[Role, Callable[[Any, Principal], Dict[str, Any]]] = {
    Role.ADMIN: _admin_dashboard,
    Role.MANAGER: _manager_dashboard,
    Role.SALES: _sales_dashboard,
    Role.SUPPORT: _support_dashboard,
}

_missing_builders = set(Role) - set(DASHBOARD_BUILDERS)
if _missing_builders:
    raise RuntimeError(f"Dashboard builders missing for roles: {sorted(role.value for role in _missing_builders)}")


def build_dashboard(db, principal: Optional[Principal]) -> Dict[str, Any]:
    admit(principal, Permission.ACCESS_DASHBOARD, entity_type="dashboard")
    data = DASHBOARD_BUILDERS[principal.role](db, principal)
    return {"role": principal.role.value, "generatedAt": _now().isoformat(), **data}


def _summarize(entity_type: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"total": len(items)}
    for field in REPORT_BREAKDOWNS[entity_type]:
        summary[f"by{field[0].upper()}{field[1:]}"] = dict(Counter(str(item.get(field) or "unknown") for item in items))
    if entity_type == "deal":
        summary["totalValue"] = sum(_value(item) for item in items)
        summary["wonValue"] = sum(_value(item) for item in items if item.get("stage") == "closed_won")
    if entity_type == "lead":
        summary["conversionRate"] = _conversion_rate(items)
    if entity_type == "task":
        summary["overdue"] = sum(1 for item in items if _is_overdue(item, _now()))
    return summary


def _report_entity(entity_type: str) -> str:
    return get_policy(entity_type).entity_type


def build_report(principal: Optional[Principal], entity_type: str) -> Dict[str, Any]:
    entity_type = _report_entity(entity_type)
    admit(principal, Permission.ACCESS_REPORTS, entity_type=entity_type)
    return _summarize(entity_type, collect_records(principal, entity_type))


def reports_overview(principal: Optional[Principal]) -> Dict[str, Any]:
    """Summaries for every entity type the principal's role can open."""
    admit(principal, Permission.ACCESS_REPORTS, entity_type="report")
    overview: Dict[str, Any] = {}
    for entity_type in REPORT_ENTITIES:
        policy = get_policy(entity_type)
        if has_permission(principal.role, policy.access):
            overview[entity_type] = _summarize(entity_type, collect_records(principal, entity_type))
    return overview


def report_rows(principal: Optional[Principal], entity_type: str) -> List[Dict[str, Any]]:
    """Flat rows for CSV export, limited to the columns of the entity type."""
    entity_type = _report_entity(entity_type)
    admit(principal, Permission.ACCESS_REPORTS, entity_type=entity_type)
    columns = REPORT_COLUMNS[entity_type]
    rows = []
    for item in collect_records(principal, entity_type):
        rows.append({column: item.get(column) for column in columns})
    logger.info("Report export: entity=%s rows=%s", entity_type, len(rows))
    return rows