from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

EMAIL_RE = re.compile(r"^[^@\s<>()\[\],;:\"]+@([A-Za-z0-9-]+\.)+[A-Za-z]{2,}$")

LEAD_SOURCES = ("website", "referral", "social_media", "email", "phone", "advertisement", "other")
LEAD_STATUSES = ("new", "contacted", "follow_up", "interested", "converted", "lost")
PRIORITIES = ("low", "medium", "high")
DEAL_STAGES = ("prospecting", "qualification", "proposal", "negotiation", "closed_won", "closed_lost")
DEAL_STATUSES = ("active", "inactive", "pending")
TASK_STATUSES = ("pending", "in-progress", "completed")
CLOSED_DEAL_STAGES = ("closed_won", "closed_lost")

STAGE_PROBABILITY = {
    "prospecting": 10,
    "qualification": 25,
    "proposal": 50,
    "negotiation": 75,
    "closed_won": 100,
    "closed_lost": 0,
}

ADDRESS_KEYS = ("street", "city", "state", "zip", "country")


def _normalize_enum(value: Any) -> Optional[str]:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    return normalized or None


def _enum(payload: Dict[str, Any], field: str, allowed, default: Optional[str] = None) -> Optional[str]:
    value = _normalize_enum(payload.get(field))
    if value is None:
        return default
    # Task statuses are hyphenated, every other enum uses underscores.
    separator = "-" if allowed is TASK_STATUSES else "_"
    value = re.sub(r"[\s_-]+", separator, value)
    if value not in allowed:
        raise ValueError(f"Invalid {field}")
    return value


def _require_str(payload: Dict[str, Any], field: str, max_length: Optional[int] = None) -> str:
    value = payload.get(field)
    if value is None:
        raise ValueError(f"{field} is required")
    text = str(value).strip()
    if not text:
        raise ValueError(f"{field} is required")
    if max_length and len(text) > max_length:
        raise ValueError(f"{field} cannot be more than {max_length} characters")
    return text


def _optional_str(payload: Dict[str, Any], field: str, max_length: Optional[int] = None) -> Optional[str]:
    value = payload.get(field)
    if value is None:
        return None
    text = str(value).strip()
    if max_length and len(text) > max_length:
        raise ValueError(f"{field} cannot be more than {max_length} characters")
    return text or None


def _email(payload: Dict[str, Any], field: str, *, required: bool = False) -> Optional[str]:
    value = _require_str(payload, field) if required else _optional_str(payload, field)
    if value is None:
        return None
    value = value.lower()
    if not EMAIL_RE.match(value):
        raise ValueError(f"Please provide a valid {field}")
    return value


def _tags(payload: Dict[str, Any], field: str = "tags") -> List[str]:
    raw = payload.get(field)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{field} must be a list")
    return [str(item).strip() for item in raw if str(item or "").strip()]


def _number(payload: Dict[str, Any], field: str, *, required: bool = False, minimum: Optional[float] = None) -> Optional[float]:
    raw = payload.get(field)
    if raw is None or raw == "":
        if required:
            raise ValueError(f"{field} is required")
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be a number") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"{field} must be at least {minimum:g}")
    return value


def _date(payload: Dict[str, Any], field: str) -> Optional[str]:
    raw = str(payload.get(field) or "").strip()
    if not raw:
        return None
    parsed = parse_datetime_utc(raw)
    if parsed is None:
        raise ValueError(f"{field} must be an ISO-8601 date")
    return parsed.isoformat().replace("+00:00", "Z")


def _ref(payload: Dict[str, Any], field: str) -> Optional[str]:
    value = payload.get(field)
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id") or value.get("_id")
    text = str(value or "").strip()
    return text or None


def parse_datetime_utc(value: Any) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _pick(cleaned: Dict[str, Any], payload: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    # On partial updates only keys the caller actually sent are kept.
    if not partial:
        return cleaned
    return {key: value for key, value in cleaned.items() if key in payload}


def validate_lead(payload: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    cleaned = {
        "name": _require_str(payload, "name", 100) if (not partial or "name" in payload) else None,
        "email": _email(payload, "email"),
        "phone": _optional_str(payload, "phone"),
        "company": _optional_str(payload, "company", 100),
        "position": _optional_str(payload, "position", 100),
        "source": _enum(payload, "source", LEAD_SOURCES, None if partial else "other"),
        "status": _enum(payload, "status", LEAD_STATUSES, None if partial else "new"),
        "priority": _enum(payload, "priority", PRIORITIES, None if partial else "medium"),
        "notes": _optional_str(payload, "notes", 1000),
        "tags": _tags(payload),
        "lastContactDate": _date(payload, "lastContactDate"),
        "nextFollowUpDate": _date(payload, "nextFollowUpDate"),
    }
    return _pick(cleaned, payload, partial)


def validate_customer(payload: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    address = payload.get("address")
    if address is not None and not isinstance(address, dict):
        raise ValueError("address must be an object")
    cleaned = {
        "name": _require_str(payload, "name", 100) if (not partial or "name" in payload) else None,
        "email": _email(payload, "email", required=not partial or "email" in payload),
        "phone": _optional_str(payload, "phone"),
        "company": _optional_str(payload, "company", 100),
        "position": _optional_str(payload, "position", 100),
        "address": {key: str(address.get(key) or "").strip() for key in ADDRESS_KEYS} if address else None,
        "source": _enum(payload, "source", LEAD_SOURCES, None if partial else "other"),
        "tags": _tags(payload),
        "lastContactDate": _date(payload, "lastContactDate"),
        "isActive": bool(payload.get("isActive", True)),
    }
    return _pick(cleaned, payload, partial)


def validate_deal(payload: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    cleaned = {
        "title": _require_str(payload, "title", 100) if (not partial or "title" in payload) else None,
        "description": _optional_str(payload, "description", 500),
        "value": _number(payload, "value", required=not partial, minimum=0),
        "stage": _enum(payload, "stage", DEAL_STAGES, None if partial else "prospecting"),
        "status": _enum(payload, "status", DEAL_STATUSES, None if partial else "active"),
        "probability": _number(payload, "probability", minimum=0),
        "expectedCloseDate": _date(payload, "expectedCloseDate"),
        "customerId": _ref(payload, "customerId"),
        "tags": _tags(payload),
        "lostReason": _optional_str(payload, "lostReason", 500),
    }
    if cleaned["probability"] is not None and cleaned["probability"] > 100:
        raise ValueError("probability cannot be more than 100")
    return _pick(cleaned, payload, partial)


def validate_task(payload: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    cleaned = {
        "title": _require_str(payload, "title", 100) if (not partial or "title" in payload) else None,
        "description": _optional_str(payload, "description", 500),
        "dueDate": _date(payload, "dueDate"),
        "status": _enum(payload, "status", TASK_STATUSES, None if partial else "pending"),
        "priority": _enum(payload, "priority", PRIORITIES, None if partial else "medium"),
        "relatedToLeadId": _ref(payload, "relatedToLeadId"),
        "relatedToCustomerId": _ref(payload, "relatedToCustomerId"),
        "relatedToDealId": _ref(payload, "relatedToDealId"),
        "notes": _optional_str(payload, "notes", 1000),
    }
    return _pick(cleaned, payload, partial)


def validate_note(payload: Dict[str, Any]) -> str:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    return _require_str(payload, "text", 1000)


def extract_assignee(payload: Dict[str, Any]) -> Optional[str]:
    return _ref(payload, "assignedTo") if isinstance(payload, dict) else None
