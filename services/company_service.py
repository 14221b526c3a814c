from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from services.crm_errors import Conflict, NotFound, ValidationError
from services.crm_rbac import Permission, Role
from services.crm_store import TABLES, iter_entities, write_activity
from services.principal import Principal
from services.route_guard import admit
from services.tenant_scope import TenantScope
from services.user_service import hash_password, serialize_user, validate_password
from schemas.crm_schema import ADDRESS_KEYS, EMAIL_RE
from shared.db import Company, User

logger = logging.getLogger(__name__)

DOMAIN_RE = re.compile(r"^([a-z0-9-]+\.)+[a-z]{2,}$")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "currency": "USD",
    "timezone": "America/New_York",
    "dateFormat": "MM/DD/YYYY",
    "timeFormat": "12h",
    "dealStages": [
        {"name": "Lead", "value": "lead", "order": 1},
        {"name": "Qualified", "value": "qualified", "order": 2},
        {"name": "Proposal", "value": "proposal", "order": 3},
        {"name": "Negotiation", "value": "negotiation", "order": 4},
        {"name": "Closed Won", "value": "closed-won", "order": 5},
        {"name": "Closed Lost", "value": "closed-lost", "order": 6},
    ],
    "leadSources": [
        {"name": "Website", "value": "website"},
        {"name": "Referral", "value": "referral"},
        {"name": "Social Media", "value": "social"},
        {"name": "Email Campaign", "value": "email"},
        {"name": "Phone Call", "value": "phone"},
        {"name": "Other", "value": "other"},
    ],
    "taskPriorities": [
        {"name": "Low", "value": "low", "color": "#10B981"},
        {"name": "Medium", "value": "medium", "color": "#F59E0B"},
        {"name": "High", "value": "high", "color": "#EF4444"},
    ],
    "emailNotifications": True,
    "taskNotifications": True,
    "dealNotifications": True,
    "leadNotifications": True,
    "sessionTimeout": "24",
    "passwordMinLength": "8",
    "autoBackup": True,
    "backupFrequency": "weekly",
    "backupRetention": "30",
}

BACKUP_FREQUENCIES = ("daily", "weekly", "monthly")
COMPANY_FIELDS = ("name", "logo", "phone", "email", "website", "industry")


def serialize_company(company: Company) -> Dict[str, Any]:
    return {
        "id": str(company.id),
        "name": company.name,
        "domain": company.domain,
        "logo": company.logo,
        "phone": company.phone,
        "email": company.email,
        "website": company.website,
        "industry": company.industry,
        "address": company.address,
        "isActive": bool(company.is_active),
        "createdAt": company.created_at.isoformat() if company.created_at else None,
    }


def _load_company(db, scope: TenantScope) -> Company:
    company = db.query(Company).filter(Company.id == scope.sql_company_id).one_or_none()
    if company is None:
        raise NotFound("Company not found")
    return company


def _clean_setting(key: str, value: Any) -> Any:
    default = DEFAULT_SETTINGS[key]
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValidationError(f"{key} must be true or false")
        return value
    if isinstance(default, list):
        if not isinstance(value, list) or not all(isinstance(item, dict) and item.get("value") for item in value):
            raise ValidationError(f"{key} must be a list of options")
        return value
    text = str(value if value is not None else "").strip()
    if not text:
        raise ValidationError(f"{key} cannot be empty")
    if key in ("sessionTimeout", "passwordMinLength", "backupRetention") and not text.isdigit():
        raise ValidationError(f"{key} must be a whole number")
    if key == "backupFrequency" and text not in BACKUP_FREQUENCIES:
        raise ValidationError("Invalid backupFrequency")
    return text


def get_company(db, principal: Optional[Principal]) -> Dict[str, Any]:
    scope = admit(principal, entity_type="company")
    return serialize_company(_load_company(db, scope))


def update_company(db, principal: Optional[Principal], payload: Dict[str, Any]) -> Dict[str, Any]:
    scope = admit(principal, Permission.ACCESS_SYSTEM_CONFIGURATION, entity_type="company")
    company = _load_company(db, scope)
    payload = payload or {}
    changed = []
    for field in COMPANY_FIELDS:
        if field not in payload:
            continue
        value = str(payload.get(field) or "").strip() or None
        if field == "name" and not value:
            raise ValidationError("Company name is required")
        if field == "email" and value and not EMAIL_RE.match(value.lower()):
            raise ValidationError("Please provide a valid email")
        setattr(company, field, value)
        changed.append(field)
    if "address" in payload:
        address = payload.get("address") or {}
        if not isinstance(address, dict):
            raise ValidationError("address must be an object")
        company.address = {key: str(address.get(key) or "").strip() for key in ADDRESS_KEYS}
        changed.append("address")
    if not changed:
        raise ValidationError("no valid fields to update")
    db.flush()
    write_activity(
        scope,
        user_id=principal.id,
        action="update",
        resource_type="Company",
        resource_id=scope.company_id,
        description="Company profile updated",
        fields=changed,
    )
    return serialize_company(company)


def get_settings(db, principal: Optional[Principal]) -> Dict[str, Any]:
    scope = admit(principal, Permission.ACCESS_SYSTEM_CONFIGURATION, entity_type="settings")
    company = _load_company(db, scope)
    return {**DEFAULT_SETTINGS, **company.settings}


def update_settings(db, principal: Optional[Principal], payload: Dict[str, Any]) -> Dict[str, Any]:
    scope = admit(principal, Permission.ACCESS_SYSTEM_CONFIGURATION, entity_type="settings")
    company = _load_company(db, scope)
    updates = {
        key: _clean_setting(key, value)
        for key, value in (payload or {}).items()
        if key in DEFAULT_SETTINGS
    }
    if not updates:
        raise ValidationError("no valid settings to update")
    company.settings = {**company.settings, **updates}
    db.flush()
    write_activity(
        scope,
        user_id=principal.id,
        action="update",
        resource_type="Settings",
        resource_id=scope.company_id,
        description="System settings updated",
        fields=list(updates),
    )
    logger.info("Settings updated for company %s: %s", scope.company_id, sorted(updates))
    return {**DEFAULT_SETTINGS, **company.settings}


def export_backup(db, principal: Optional[Principal]) -> Dict[str, Any]:
    """Snapshot of one tenant: company profile, users and every CRM document."""
    scope = admit(principal, Permission.RUN_BACKUPS, entity_type="backup")
    company = _load_company(db, scope)
    users = scope.apply_to_query(db.query(User), User).order_by(User.id.asc()).all()
    snapshot: Dict[str, Any] = {
        "generatedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "company": serialize_company(company),
        "settings": {**DEFAULT_SETTINGS, **company.settings},
        "users": [serialize_user(user) for user in users],
    }
    for table_key in TABLES:
        snapshot[table_key] = list(iter_entities(table_key, scope))
    write_activity(
        scope,
        user_id=principal.id,
        action="backup",
        resource_type="Company",
        resource_id=scope.company_id,
        description="Backup exported",
    )
    logger.info("Backup exported for company %s by user %s", scope.company_id, principal.id)
    return snapshot


def setup_company(db, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    First-run setup: create a company and its first admin.

    This is the one operation that runs without a principal or tenant scope,
    because the tenant does not exist yet.
    """
    payload = payload or {}
    name = str(payload.get("companyName") or "").strip()
    domain = str(payload.get("companyDomain") or "").strip().lower()
    admin_name = str(payload.get("adminName") or "").strip()
    admin_email = str(payload.get("adminEmail") or "").strip().lower()
    admin_password = payload.get("adminPassword")

    if not name or len(name) > 100:
        raise ValidationError("Company name is required (max 100 characters)")
    if not DOMAIN_RE.match(domain):
        raise ValidationError("Please provide a valid company domain")
    if not admin_name or len(admin_name) > 50:
        raise ValidationError("Admin name is required (max 50 characters)")
    if not EMAIL_RE.match(admin_email):
        raise ValidationError("Please provide a valid admin email")
    password = validate_password(admin_password)

    if db.query(Company).filter(Company.domain == domain).one_or_none() is not None:
        raise Conflict("Company with this domain already exists")
    if db.query(User).filter(User.email == admin_email).one_or_none() is not None:
        raise Conflict("User with this email already exists")

    company = Company(
        name=name,
        domain=domain,
        industry=str(payload.get("industry") or "").strip() or None,
        phone=str(payload.get("phone") or "").strip() or None,
        email=admin_email,
        is_active=True,
    )
    company.settings = dict(DEFAULT_SETTINGS)
    db.add(company)
    db.flush()

    admin = User(
        company_id=company.id,
        name=admin_name,
        email=admin_email,
        password_hash=hash_password(password),
        role=Role.ADMIN.value,
        is_active=True,
    )
    db.add(admin)
    db.flush()

    write_activity(
        TenantScope(company_id=str(company.id)),
        user_id=str(admin.id),
        action="create",
        resource_type="Company",
        resource_id=str(company.id),
        description="Company created during setup",
    )
    logger.info("Company %s set up with admin user %s", company.id, admin.id)
    return {"company": serialize_company(company), "admin": serialize_user(admin)}
