from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple
from uuid import uuid4

from azure.core.exceptions import ResourceNotFoundError
from azure.data.tables import TableServiceClient, UpdateMode

from services.tenant_scope import TenantScope, strip_tenant_fields
from shared.config import get_storage_connection_string

logger = logging.getLogger(__name__)

TABLES = {
    "leads": os.getenv("CRM_LEADS_TABLE", "CRMLeads"),
    "customers": os.getenv("CRM_CUSTOMERS_TABLE", "CRMCustomers"),
    "deals": os.getenv("CRM_DEALS_TABLE", "CRMDeals"),
    "tasks": os.getenv("CRM_TASKS_TABLE", "CRMTasks"),
    "activities": os.getenv("CRM_ACTIVITIES_TABLE", "CRMActivities"),
}

MAX_LIST_LIMIT = 1000
_RESERVED_KEYS = {"PartitionKey", "RowKey", "Timestamp", "etag"}

_service_client: Optional[TableServiceClient] = None
_table_clients: Dict[str, Any] = {}
_table_lock = Lock()

_memory_lock = Lock()
_memory_store: Dict[str, Dict[str, Dict[str, dict]]] = {}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return _utc_now().isoformat().replace("+00:00", "Z")


def _new_id() -> str:
    ts_ms = int(_utc_now().timestamp() * 1000)
    return f"{ts_ms:013d}_{uuid4().hex[:12]}"


def _escape_odata(value: str) -> str:
    return str(value or "").replace("'", "''")


def _odata_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return f"'{_escape_odata(str(value))}'"


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _json_load(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _get_service_client() -> Optional[TableServiceClient]:
    global _service_client
    if _service_client is not None:
        return _service_client
    conn_str = get_storage_connection_string()
    if not conn_str:
        return None
    _service_client = TableServiceClient.from_connection_string(conn_str)
    return _service_client


def _get_table_client(table_name: str):
    if table_name in _table_clients:
        return _table_clients[table_name]
    service = _get_service_client()
    if service is None:
        return None
    with _table_lock:
        if table_name in _table_clients:
            return _table_clients[table_name]
        service.create_table_if_not_exists(table_name)
        client = service.get_table_client(table_name=table_name)
        _table_clients[table_name] = client
        logger.info("CRM table ready: %s", table_name)
        return client


def _encode_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {}
    for key, value in payload.items():
        if value is None or key in _RESERVED_KEYS:
            continue
        if isinstance(value, (list, dict)):
            encoded[f"{key}Json"] = _json_dump(value)
        else:
            encoded[key] = value
    return encoded


def _decode_payload(entity: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in entity.items():
        if key in _RESERVED_KEYS:
            continue
        if key.endswith("Json"):
            out[key[:-4]] = _json_load(value)
        else:
            out[key] = value
    out["id"] = entity.get("RowKey") or out.get("id")
    return out


def _memory_put(table_name: str, partition: str, row_key: str, payload: Dict[str, Any]) -> dict:
    with _memory_lock:
        tenant_bucket = _memory_store.setdefault(table_name, {}).setdefault(partition, {})
        entity = {
            "PartitionKey": partition,
            "RowKey": row_key,
            **payload,
        }
        tenant_bucket[row_key] = entity
        return dict(entity)


def _memory_get(table_name: str, partition: str, row_key: str) -> Optional[dict]:
    with _memory_lock:
        entity = _memory_store.get(table_name, {}).get(partition, {}).get(row_key)
        return dict(entity) if entity else None


def _memory_delete(table_name: str, partition: str, row_key: str) -> bool:
    with _memory_lock:
        tenant_bucket = _memory_store.get(table_name, {}).get(partition, {})
        return tenant_bucket.pop(row_key, None) is not None


def _memory_list(table_name: str, partition: str) -> List[dict]:
    with _memory_lock:
        tenant_bucket = _memory_store.get(table_name, {}).get(partition, {})
        return [dict(item) for item in tenant_bucket.values()]


def _write(table_key: str, scope: TenantScope, row_key: str, body: Dict[str, Any], *, create: bool) -> Dict[str, Any]:
    encoded = _encode_payload(body)
    client = _get_table_client(TABLES[table_key])
    if client:
        entity = {
            "PartitionKey": scope.company_id,
            "RowKey": row_key,
            **encoded,
        }
        if create:
            client.create_entity(entity=entity)
        else:
            # Replace so fields cleared to None (e.g. unassignment) are dropped.
            client.upsert_entity(entity=entity, mode=UpdateMode.REPLACE)
        return _decode_payload(entity)
    return _decode_payload(_memory_put(TABLES[table_key], scope.company_id, row_key, encoded))


def create_entity(table_key: str, scope: TenantScope, payload: Mapping[str, Any]) -> Dict[str, Any]:
    now = utc_now_iso()
    row_key = _new_id()
    body = {
        **scope.stamp(payload),
        "createdAt": payload.get("createdAt") or now,
        "updatedAt": now,
    }
    body.pop("id", None)
    return _write(table_key, scope, row_key, body, create=True)


def get_entity(table_key: str, scope: TenantScope, entity_id: str) -> Optional[Dict[str, Any]]:
    """Fetch one document; anything outside the scope's tenant reads as missing."""
    entity_id = str(entity_id or "").strip()
    if not entity_id:
        return None
    client = _get_table_client(TABLES[table_key])
    if client:
        try:
            raw = client.get_entity(partition_key=scope.company_id, row_key=entity_id)
        except ResourceNotFoundError:
            return None
    else:
        raw = _memory_get(TABLES[table_key], scope.company_id, entity_id)
    if not raw:
        return None
    item = _decode_payload(raw)
    if not scope.owns(item):
        logger.warning("CRM %s document %s failed tenant ownership check", table_key, entity_id)
        return None
    return item


def update_entity(
    table_key: str,
    scope: TenantScope,
    entity_id: str,
    updates: Mapping[str, Any],
) -> Optional[Dict[str, Any]]:
    existing = get_entity(table_key, scope, entity_id)
    if existing is None:
        return None
    merged = {
        **existing,
        **strip_tenant_fields(updates),
        **scope.as_filter(),
        "createdAt": existing.get("createdAt") or utc_now_iso(),
        "updatedAt": utc_now_iso(),
    }
    merged.pop("id", None)
    return _write(table_key, scope, existing["id"], merged, create=False)


def delete_entity(table_key: str, scope: TenantScope, entity_id: str) -> bool:
    existing = get_entity(table_key, scope, entity_id)
    if existing is None:
        return False
    client = _get_table_client(TABLES[table_key])
    if client:
        try:
            client.delete_entity(partition_key=scope.company_id, row_key=existing["id"])
        except ResourceNotFoundError:
            return False
        return True
    return _memory_delete(TABLES[table_key], scope.company_id, existing["id"])


def _matches(item: Mapping[str, Any], where: Mapping[str, Any]) -> bool:
    return all(item.get(key) == value for key, value in where.items())


def list_entities(
    table_key: str,
    scope: TenantScope,
    *,
    where: Optional[Mapping[str, Any]] = None,
    limit: int = 50,
    cursor: Optional[str] = None,
    filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None,
    descending: bool = False,
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    List one tenant's documents.

    ``where`` holds equality conditions on scalar fields. The tenant condition
    is merged into it and always wins over a caller-supplied ``companyId``.
    """
    conditions = scope.merge(where)
    safe_limit = max(1, min(MAX_LIST_LIMIT, int(limit or 50)))
    cursor_value = str(cursor or "")
    client = _get_table_client(TABLES[table_key])
    if client:
        filter_expr = f"PartitionKey eq '{_escape_odata(scope.company_id)}'"
        for key, value in conditions.items():
            filter_expr += f" and {key} eq {_odata_literal(value)}"
        if cursor_value:
            op = "lt" if descending else "gt"
            filter_expr += f" and RowKey {op} '{_escape_odata(cursor_value)}'"
        rows = [_decode_payload(item) for item in client.query_entities(query_filter=filter_expr)]
    else:
        rows = [_decode_payload(item) for item in _memory_list(TABLES[table_key], scope.company_id)]
        if cursor_value:
            if descending:
                rows = [item for item in rows if str(item.get("id") or "") < cursor_value]
            else:
                rows = [item for item in rows if str(item.get("id") or "") > cursor_value]

    rows = [item for item in rows if scope.owns(item) and _matches(item, conditions)]
    rows.sort(key=lambda item: str(item.get("id") or ""))
    if descending:
        rows.reverse()
    if filter_fn:
        rows = [item for item in rows if filter_fn(item)]
    page = rows[:safe_limit]
    next_cursor = page[-1]["id"] if len(rows) > safe_limit and page else None
    return page, next_cursor


def iter_entities(
    table_key: str,
    scope: TenantScope,
    *,
    where: Optional[Mapping[str, Any]] = None,
    filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None,
) -> Iterator[Dict[str, Any]]:
    cursor: Optional[str] = None
    while True:
        page, cursor = list_entities(
            table_key,
            scope,
            where=where,
            limit=MAX_LIST_LIMIT,
            cursor=cursor,
            filter_fn=filter_fn,
        )
        yield from page
        if not cursor:
            return


def write_activity(
    scope: TenantScope,
    *,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: str,
    description: str,
    fields: Optional[List[str]] = None,
) -> Dict[str, Any]:
    # Changed field names only; record contents stay out of the log.
    payload = {
        "userId": user_id,
        "action": action,
        "resourceType": resource_type,
        "resourceId": resource_id,
        "description": description[:500],
        "fields": sorted(fields) if fields else None,
        "timestamp": utc_now_iso(),
    }
    return create_entity("activities", scope, payload)


def reset_memory_store_for_tests() -> None:
    with _memory_lock:
        _memory_store.clear()
