from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from services.crm_errors import Forbidden, NotFound, ValidationError
from services.crm_rbac import Permission, has_permission
from services.crm_store import (
    create_entity,
    delete_entity,
    get_entity,
    iter_entities,
    list_entities,
    update_entity,
    utc_now_iso,
    write_activity,
)
from services.principal import Principal
from services.route_guard import admit, deny
from services.tenant_scope import TenantScope
from services.user_service import find_tenant_user
from schemas.crm_schema import (
    CLOSED_DEAL_STAGES,
    LEAD_STATUSES,
    STAGE_PROBABILITY,
    extract_assignee,
    validate_customer,
    validate_deal,
    validate_lead,
    validate_note,
    validate_task,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityPolicy:
    entity_type: str
    resource_type: str
    table_key: str
    access: Permission
    view_all: Permission
    manage: Permission
    update_all: Permission
    assign: Permission
    validator: Callable[..., Dict[str, Any]]
    filterable: FrozenSet[str]
    search_fields: Tuple[str, ...]


POLICIES: Dict[str, EntityPolicy] = {
    "lead": EntityPolicy(
        entity_type="lead",
        resource_type="Lead",
        table_key="leads",
        access=Permission.ACCESS_LEADS,
        view_all=Permission.VIEW_ALL_LEADS,
        manage=Permission.MANAGE_LEADS,
        update_all=Permission.UPDATE_ALL_LEADS,
        assign=Permission.ASSIGN_LEADS,
        validator=validate_lead,
        filterable=frozenset({"status", "source", "priority", "assignedTo"}),
        search_fields=("name", "email", "company", "phone"),
    ),
    "customer": EntityPolicy(
        entity_type="customer",
        resource_type="Customer",
        table_key="customers",
        access=Permission.ACCESS_CUSTOMERS,
        view_all=Permission.VIEW_ALL_CUSTOMERS,
        manage=Permission.MANAGE_CUSTOMERS,
        update_all=Permission.UPDATE_ALL_CUSTOMERS,
        assign=Permission.ASSIGN_TASKS,
        validator=validate_customer,
        filterable=frozenset({"source", "assignedTo", "isActive"}),
        search_fields=("name", "email", "company", "phone"),
    ),
    "deal": EntityPolicy(
        entity_type="deal",
        resource_type="Deal",
        table_key="deals",
        access=Permission.ACCESS_DEALS,
        view_all=Permission.VIEW_ALL_DEALS,
        manage=Permission.MANAGE_DEALS,
        update_all=Permission.UPDATE_ALL_DEALS,
        assign=Permission.ASSIGN_TASKS,
        validator=validate_deal,
        filterable=frozenset({"stage", "status", "assignedTo", "customerId"}),
        search_fields=("title", "description"),
    ),
    "task": EntityPolicy(
        entity_type="task",
        resource_type="Task",
        table_key="tasks",
        access=Permission.ACCESS_TASKS,
        view_all=Permission.VIEW_ALL_TASKS,
        manage=Permission.MANAGE_TASKS,
        update_all=Permission.UPDATE_ALL_TASKS,
        assign=Permission.ASSIGN_TASKS,
        validator=validate_task,
        filterable=frozenset(
            {"status", "priority", "assignedTo", "relatedToLeadId", "relatedToCustomerId", "relatedToDealId"}
        ),
        search_fields=("title", "description"),
    ),
}

# Reference fields that must point at a record the principal can see.
_REFERENCES = {
    "customerId": "customer",
    "relatedToLeadId": "lead",
    "relatedToCustomerId": "customer",
    "relatedToDealId": "deal",
}


def get_policy(entity_type: str) -> EntityPolicy:
    policy = POLICIES.get(str(entity_type or "").strip().lower())
    if policy is None:
        raise ValidationError("Unknown record type")
    return policy


def is_owner(principal: Principal, item: Dict[str, Any]) -> bool:
    return principal.id in {str(item.get("assignedTo") or ""), str(item.get("createdBy") or "")}


def is_visible(principal: Principal, policy: EntityPolicy, item: Dict[str, Any]) -> bool:
    return has_permission(principal.role, policy.view_all) or is_owner(principal, item)


def _matches_search(policy: EntityPolicy, item: Dict[str, Any], search: str) -> bool:
    needle = str(search or "").strip().lower()
    if not needle:
        return True
    haystack = " ".join(str(item.get(field) or "") for field in policy.search_fields).lower()
    return needle in haystack


def _validated(policy: EntityPolicy, payload: Dict[str, Any], *, partial: bool) -> Dict[str, Any]:
    try:
        return policy.validator(payload, partial=partial)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _load_visible(principal: Principal, policy: EntityPolicy, scope: TenantScope, record_id: str) -> Dict[str, Any]:
    item = get_entity(policy.table_key, scope, record_id)
    if item is None or not is_visible(principal, policy, item):
        deny(
            principal,
            NotFound(f"{policy.entity_type} not found"),
            permission=policy.view_all,
            entity_type=policy.entity_type,
        )
    return item


def _check_references(principal: Principal, scope: TenantScope, body: Dict[str, Any]) -> None:
    for field, entity_type in _REFERENCES.items():
        ref = body.get(field)
        if not ref:
            continue
        target = POLICIES[entity_type]
        item = get_entity(target.table_key, scope, ref)
        # Records hidden from the principal read as missing.
        if item is None or not is_visible(principal, target, item):
            deny(
                principal,
                NotFound(f"{field} does not reference an existing record"),
                permission=target.view_all,
                entity_type=target.entity_type,
            )


def _resolve_assignee(
    db,
    principal: Principal,
    policy: EntityPolicy,
    scope: TenantScope,
    requested: Optional[str],
) -> str:
    if not requested or requested == principal.id:
        return principal.id
    if not has_permission(principal.role, policy.assign):
        deny(principal, Forbidden(), permission=policy.assign, entity_type=policy.entity_type)
    if find_tenant_user(db, scope, requested) is None:
        deny(principal, NotFound("assignee not found"), permission=policy.assign, entity_type="user")
    return requested


def _apply_derived_fields(policy: EntityPolicy, before: Dict[str, Any], changes: Dict[str, Any]) -> None:
    if policy.entity_type == "deal":
        stage = changes.get("stage") or before.get("stage")
        if "stage" in changes and changes.get("probability") is None:
            changes["probability"] = STAGE_PROBABILITY.get(stage, 0)
        if stage in CLOSED_DEAL_STAGES and not before.get("actualCloseDate"):
            changes["actualCloseDate"] = utc_now_iso()
    elif policy.entity_type == "task" and "status" in changes:
        if changes["status"] == "completed":
            if not before.get("completedAt"):
                changes["completedAt"] = utc_now_iso()
        else:
            changes["completedAt"] = None


def _activity_action(policy: EntityPolicy, before: Dict[str, Any], changes: Dict[str, Any]) -> str:
    if policy.entity_type == "deal" and changes.get("stage") != before.get("stage"):
        if changes.get("stage") == "closed_won":
            return "won"
        if changes.get("stage") == "closed_lost":
            return "lost"
    if policy.entity_type == "task" and "status" in changes and changes["status"] != before.get("status"):
        if changes["status"] == "completed":
            return "complete"
        if before.get("status") == "completed":
            return "reopen"
    return "update"


def _record_activity(
    scope: TenantScope,
    principal: Principal,
    policy: EntityPolicy,
    record_id: str,
    action: str,
    fields: Optional[List[str]] = None,
) -> None:
    write_activity(
        scope,
        user_id=principal.id,
        action=action,
        resource_type=policy.resource_type,
        resource_id=record_id,
        description=f"{policy.resource_type} {record_id} {action}",
        fields=fields,
    )


def list_records(
    principal: Optional[Principal],
    entity_type: str,
    *,
    filters: Optional[Dict[str, Any]] = None,
    search: Optional[str] = None,
    limit: int = 50,
    cursor: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    policy = get_policy(entity_type)
    scope = admit(principal, policy.access, entity_type=policy.entity_type)
    where = {
        key: value
        for key, value in (filters or {}).items()
        if key in policy.filterable and value not in (None, "")
    }
    return list_entities(
        policy.table_key,
        scope,
        where=where,
        limit=limit,
        cursor=cursor,
        filter_fn=lambda item: is_visible(principal, policy, item) and _matches_search(policy, item, search or ""),
        descending=True,
    )


def collect_records(principal: Optional[Principal], entity_type: str) -> List[Dict[str, Any]]:
    """Every record of a type the principal may see, for dashboards and reports."""
    policy = get_policy(entity_type)
    scope = admit(principal, policy.access, entity_type=policy.entity_type)
    return list(
        iter_entities(
            policy.table_key,
            scope,
            filter_fn=lambda item: is_visible(principal, policy, item),
        )
    )


def get_record(principal: Optional[Principal], entity_type: str, record_id: str) -> Dict[str, Any]:
    policy = get_policy(entity_type)
    scope = admit(principal, policy.access, entity_type=policy.entity_type)
    return _load_visible(principal, policy, scope, record_id)


def create_record(db, principal: Optional[Principal], entity_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    policy = get_policy(entity_type)
    scope = admit(principal, policy.manage, entity_type=policy.entity_type)
    body = _validated(policy, payload or {}, partial=False)
    body = {key: value for key, value in body.items() if value is not None}
    _check_references(principal, scope, body)
    body["assignedTo"] = _resolve_assignee(db, principal, policy, scope, extract_assignee(payload or {}))
    body["createdBy"] = principal.id
    _apply_derived_fields(policy, {}, body)
    if policy.entity_type == "lead" and body.get("status") == "converted":
        raise ValidationError("Use the convert action to convert a lead")
    created = create_entity(policy.table_key, scope, body)
    _record_activity(scope, principal, policy, created["id"], "create")
    return created


def update_record(
    db,
    principal: Optional[Principal],
    entity_type: str,
    record_id: str,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    policy = get_policy(entity_type)
    scope = admit(principal, policy.manage, entity_type=policy.entity_type)
    before = _load_visible(principal, policy, scope, record_id)
    if not is_owner(principal, before) and not has_permission(principal.role, policy.update_all):
        deny(principal, Forbidden(), permission=policy.update_all, entity_type=policy.entity_type)

    payload = payload or {}
    changes = _validated(policy, payload, partial=True)
    if "assignedTo" in payload:
        requested = extract_assignee(payload)
        if requested is None:
            # An explicit null releases the record; it never falls back to the caller.
            if before.get("assignedTo"):
                if not has_permission(principal.role, policy.assign):
                    deny(principal, Forbidden(), permission=policy.assign, entity_type=policy.entity_type)
                changes["assignedTo"] = None
        elif requested != before.get("assignedTo"):
            changes["assignedTo"] = _resolve_assignee(db, principal, policy, scope, requested)
    if not changes:
        raise ValidationError("no valid fields to update")
    if policy.entity_type == "lead" and changes.get("status") == "converted" and not before.get("convertedToCustomer"):
        raise ValidationError("Use the convert action to convert a lead")
    _check_references(principal, scope, changes)
    _apply_derived_fields(policy, before, changes)

    after = update_entity(policy.table_key, scope, before["id"], changes)
    if after is None:
        raise NotFound(f"{policy.entity_type} not found")
    _record_activity(scope, principal, policy, before["id"], _activity_action(policy, before, changes), list(changes))
    return after


def delete_record(principal: Optional[Principal], entity_type: str, record_id: str) -> bool:
    policy = get_policy(entity_type)
    scope = admit(principal, policy.manage, entity_type=policy.entity_type)
    before = _load_visible(principal, policy, scope, record_id)
    if not is_owner(principal, before) and not has_permission(principal.role, Permission.DELETE_ANY_DATA):
        deny(principal, Forbidden(), permission=Permission.DELETE_ANY_DATA, entity_type=policy.entity_type)
    deleted = delete_entity(policy.table_key, scope, before["id"])
    if deleted:
        _record_activity(scope, principal, policy, before["id"], "delete")
    return deleted


def assign_lead(db, principal: Optional[Principal], lead_id: str, user_id: str) -> Dict[str, Any]:
    policy = POLICIES["lead"]
    scope = admit(principal, Permission.ASSIGN_LEADS, entity_type=policy.entity_type)
    before = _load_visible(principal, policy, scope, lead_id)
    target = str(user_id or "").strip()
    if not target:
        raise ValidationError("assignedTo is required")
    if find_tenant_user(db, scope, target) is None:
        deny(principal, NotFound("assignee not found"), permission=Permission.ASSIGN_LEADS, entity_type="user")
    after = update_entity(policy.table_key, scope, before["id"], {"assignedTo": target})
    _record_activity(scope, principal, policy, before["id"], "assign", ["assignedTo"])
    return after


def unassign_lead(principal: Optional[Principal], lead_id: str) -> Dict[str, Any]:
    """Return the lead to the unassigned pool without touching its pipeline status."""
    policy = POLICIES["lead"]
    scope = admit(principal, Permission.ASSIGN_LEADS, entity_type=policy.entity_type)
    before = _load_visible(principal, policy, scope, lead_id)
    after = update_entity(policy.table_key, scope, before["id"], {"assignedTo": None})
    _record_activity(scope, principal, policy, before["id"], "unassign", ["assignedTo"])
    return after


def leads_kanban(principal: Optional[Principal]) -> Dict[str, Any]:
    leads = collect_records(principal, "lead")
    columns = {status: [] for status in LEAD_STATUSES}
    unassigned = 0
    for lead in leads:
        columns.setdefault(str(lead.get("status") or "new"), []).append(lead)
        if not lead.get("assignedTo"):
            unassigned += 1
    return {
        "columns": [{"status": status, "items": items, "count": len(items)} for status, items in columns.items()],
        "unassigned": unassigned,
        "total": len(leads),
    }


def convert_lead(principal: Optional[Principal], lead_id: str) -> Dict[str, Any]:
    policy = POLICIES["lead"]
    scope = admit(principal, Permission.CONVERT_LEADS, entity_type=policy.entity_type)
    lead = _load_visible(principal, policy, scope, lead_id)
    if not is_owner(principal, lead) and not has_permission(principal.role, Permission.CONVERT_ALL_LEADS):
        deny(principal, Forbidden(), permission=Permission.CONVERT_ALL_LEADS, entity_type=policy.entity_type)
    if lead.get("convertedToCustomer"):
        raise ValidationError("Lead has already been converted")
    if not lead.get("email"):
        raise ValidationError("Lead needs an email before it can be converted")

    customer_body = {
        key: lead.get(key)
        for key in ("name", "email", "phone", "company", "position", "source", "tags")
        if lead.get(key) is not None
    }
    customer_body.update(
        {
            "assignedTo": lead.get("assignedTo") or principal.id,
            "createdBy": principal.id,
            "leadId": lead["id"],
            "isActive": True,
            "totalValue": 0,
            "dealsCount": 0,
        }
    )
    customer = create_entity("customers", scope, customer_body)
    updated_lead = update_entity(
        policy.table_key,
        scope,
        lead["id"],
        {"status": "converted", "convertedToCustomer": True, "customerId": customer["id"]},
    )
    _record_activity(scope, principal, policy, lead["id"], "convert", ["status", "convertedToCustomer", "customerId"])
    _record_activity(scope, principal, POLICIES["customer"], customer["id"], "create")
    return {"lead": updated_lead, "customer": customer}


def add_customer_note(principal: Optional[Principal], customer_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    policy = POLICIES["customer"]
    scope = admit(principal, Permission.ADD_CUSTOMER_NOTES, entity_type=policy.entity_type)
    customer = _load_visible(principal, policy, scope, customer_id)
    try:
        text = validate_note(payload or {})
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    notes = list(customer.get("notes") or [])
    notes.append({"text": text, "createdBy": principal.id, "createdAt": utc_now_iso()})
    after = update_entity(policy.table_key, scope, customer["id"], {"notes": notes, "lastContactDate": utc_now_iso()})
    _record_activity(scope, principal, policy, customer["id"], "update", ["notes"])
    return after


def approve_deal(principal: Optional[Principal], deal_id: str) -> Dict[str, Any]:
    policy = POLICIES["deal"]
    scope = admit(principal, Permission.APPROVE_DEALS, entity_type=policy.entity_type)
    deal = _load_visible(principal, policy, scope, deal_id)
    after = update_entity(
        policy.table_key,
        scope,
        deal["id"],
        {"approved": True, "approvedBy": principal.id, "approvedAt": utc_now_iso()},
    )
    _record_activity(scope, principal, policy, deal["id"], "approve", ["approved"])
    return after


def list_activity(principal: Optional[Principal], *, limit: int = 20) -> List[Dict[str, Any]]:
    scope = admit(principal, Permission.VIEW_ALL_REPORTS, entity_type="activity")
    items, _ = list_entities("activities", scope, limit=limit, descending=True)
    return items
