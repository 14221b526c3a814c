from __future__ import annotations

import hashlib
import logging
import re
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from services.crm_errors import Conflict, Forbidden, NotFound, ValidationError
from services.crm_rbac import Permission, Role, parse_role
from services.crm_store import write_activity
from services.principal import Principal
from services.route_guard import admit, deny
from services.tenant_scope import TenantScope
from schemas.crm_schema import EMAIL_RE
from shared.db import Company, User

logger = logging.getLogger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_SPECIALS = "@$!%*?&"
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&]).+$")


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    hashed = hashlib.sha256((salt + password).encode("utf-8")).hexdigest()
    return f"{salt}${hashed}"


def verify_password(password: str, stored: str) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, hashed = stored.split("$", 1)
    check = hashlib.sha256((salt + password).encode("utf-8")).hexdigest()
    return secrets.compare_digest(check, hashed)


def validate_password(password: Any) -> str:
    text = str(password or "")
    if len(text) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if not PASSWORD_RE.match(text):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            f"one number and one special character ({PASSWORD_SPECIALS})"
        )
    return text


def generate_password() -> str:
    """Random password that satisfies the password policy."""
    return f"{secrets.token_urlsafe(9)}A{secrets.choice('abcdefgh')}{secrets.randbelow(10)}{secrets.choice(PASSWORD_SPECIALS)}"


def _clean_email(value: Any) -> str:
    email = str(value or "").strip().lower()
    if not email or not EMAIL_RE.match(email):
        raise ValidationError("Please provide a valid email")
    return email


def _clean_name(value: Any) -> str:
    name = str(value or "").strip()
    if not name:
        raise ValidationError("Please provide a name")
    if len(name) > 50:
        raise ValidationError("Name cannot be more than 50 characters")
    return name


def _clean_role(value: Any) -> Role:
    role = parse_role(value)
    if role is None:
        raise ValidationError("Invalid role")
    return role


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "companyId": str(user.company_id),
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "phone": user.phone,
        "department": user.department,
        "isActive": bool(user.is_active),
        "lastLoginAt": user.last_login_at.isoformat() if user.last_login_at else None,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


def _user_id(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def find_tenant_user(db, scope: TenantScope, user_id: Any) -> Optional[User]:
    """Look up a user inside one tenant; users of other tenants read as missing."""
    numeric_id = _user_id(user_id)
    if numeric_id is None:
        return None
    query = scope.apply_to_query(db.query(User), User)
    return query.filter(User.id == numeric_id).one_or_none()


def _email_taken(db, email: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(User).filter(User.email == email)
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return db.query(query.exists()).scalar()


def _log_user_activity(scope: TenantScope, principal: Principal, user_id: Any, action: str, fields=None) -> None:
    write_activity(
        scope,
        user_id=principal.id,
        action=action,
        resource_type="User",
        resource_id=str(user_id),
        description=f"User {user_id} {action}",
        fields=fields,
    )


def authenticate(db, email: str, password: str) -> Optional[User]:
    """Return the active user for a credential pair, or None."""
    email = str(email or "").strip().lower()
    if not email or not password:
        return None
    user = db.query(User).filter(User.email == email).one_or_none()
    if not user or not verify_password(password, user.password_hash):
        return None
    if not user.is_active:
        logger.info("Login refused for inactive user %s", user.id)
        return None
    company = db.get(Company, user.company_id)
    if company is None or not company.is_active:
        logger.info("Login refused for user %s of inactive company %s", user.id, user.company_id)
        return None
    user.last_login_at = datetime.utcnow()
    db.flush()
    return user


def list_users(
    db,
    principal: Optional[Principal],
    *,
    role: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = True,
) -> List[Dict[str, Any]]:
    scope = admit(principal, Permission.VIEW_ALL_USERS, entity_type="user")
    query = scope.apply_to_query(db.query(User), User)
    if role:
        query = query.filter(User.role == _clean_role(role).value)
    if not include_inactive:
        query = query.filter(User.is_active.is_(True))
    if search:
        needle = f"%{str(search).strip().lower()}%"
        query = query.filter((User.name.ilike(needle)) | (User.email.ilike(needle)))
    return [serialize_user(user) for user in query.order_by(User.name.asc()).all()]


def list_team_members(db, principal: Optional[Principal]) -> List[Dict[str, Any]]:
    scope = admit(principal, Permission.VIEW_ALL_USERS, entity_type="user")
    query = scope.apply_to_query(db.query(User), User).filter(User.is_active.is_(True))
    return [
        {"id": str(user.id), "name": user.name, "role": user.role}
        for user in query.order_by(User.name.asc()).all()
    ]


def _load_tenant_user(
    db,
    principal: Principal,
    scope: TenantScope,
    user_id: Any,
    permission: Optional[Permission],
) -> User:
    user = find_tenant_user(db, scope, user_id)
    if user is None:
        deny(principal, NotFound("User not found"), permission=permission, entity_type="user")
    return user


def get_user(db, principal: Optional[Principal], user_id: Any) -> Dict[str, Any]:
    """User management read; needs team visibility even for the caller's own id."""
    scope = admit(principal, Permission.VIEW_ALL_USERS, entity_type="user")
    return serialize_user(_load_tenant_user(db, principal, scope, user_id, Permission.VIEW_ALL_USERS))


def get_own_profile(db, principal: Optional[Principal]) -> Dict[str, Any]:
    scope = admit(principal, entity_type="user")
    return serialize_user(_load_tenant_user(db, principal, scope, principal.id, None))


def create_user(db, principal: Optional[Principal], payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Create a user inside the caller's company.

    A password is generated when none is supplied; it is returned once so the
    caller can hand it over. Any company id in the payload is ignored.
    """
    scope = admit(principal, Permission.CREATE_USERS, entity_type="user")
    payload = payload or {}
    name = _clean_name(payload.get("name"))
    email = _clean_email(payload.get("email"))
    role = _clean_role(payload.get("role") or Role.SALES.value)
    if role is Role.ADMIN and principal.role is not Role.ADMIN:
        deny(principal, Forbidden(), permission=Permission.CREATE_USERS, entity_type="user")

    generated = None
    if payload.get("password"):
        password = validate_password(payload.get("password"))
    else:
        password = generated = generate_password()

    if _email_taken(db, email):
        raise Conflict("A user with this email already exists")

    user = User(
        company_id=scope.sql_company_id,
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role.value,
        phone=str(payload.get("phone") or "").strip() or None,
        department=str(payload.get("department") or "").strip() or None,
        is_active=bool(payload.get("isActive", True)),
    )
    db.add(user)
    db.flush()
    _log_user_activity(scope, principal, user.id, "create")
    logger.info("User %s created in company %s with role %s", user.id, scope.company_id, role.value)
    return serialize_user(user), generated


def update_user(db, principal: Optional[Principal], user_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
    scope = admit(principal, Permission.EDIT_USERS, entity_type="user")
    user = _load_tenant_user(db, principal, scope, user_id, Permission.EDIT_USERS)
    payload = payload or {}
    is_admin = principal.role is Role.ADMIN
    if user.role == Role.ADMIN.value and not is_admin:
        deny(principal, Forbidden(), permission=Permission.EDIT_USERS, entity_type="user")

    changed: List[str] = []
    if "name" in payload:
        user.name = _clean_name(payload.get("name"))
        changed.append("name")
    if "email" in payload:
        email = _clean_email(payload.get("email"))
        if _email_taken(db, email, exclude_id=user.id):
            raise Conflict("A user with this email already exists")
        user.email = email
        changed.append("email")
    if "role" in payload:
        role = _clean_role(payload.get("role"))
        if role is Role.ADMIN and not is_admin:
            deny(principal, Forbidden(), permission=Permission.EDIT_USERS, entity_type="user")
        if str(user.id) == principal.id and role is not parse_role(user.role):
            raise ValidationError("You cannot change your own role")
        user.role = role.value
        changed.append("role")
    if "isActive" in payload:
        active = bool(payload.get("isActive"))
        if str(user.id) == principal.id and not active:
            raise ValidationError("You cannot deactivate your own account")
        user.is_active = active
        changed.append("isActive")
    for field, column in (("phone", "phone"), ("department", "department")):
        if field in payload:
            setattr(user, column, str(payload.get(field) or "").strip() or None)
            changed.append(field)
    if payload.get("password"):
        user.password_hash = hash_password(validate_password(payload.get("password")))
        changed.append("password")
    if not changed:
        raise ValidationError("no valid fields to update")

    db.flush()
    _log_user_activity(scope, principal, user.id, "update", changed)
    return serialize_user(user)


def delete_user(db, principal: Optional[Principal], user_id: Any) -> None:
    scope = admit(principal, Permission.DELETE_USERS, entity_type="user")
    user = _load_tenant_user(db, principal, scope, user_id, Permission.DELETE_USERS)
    if str(user.id) == principal.id:
        raise ValidationError("You cannot delete your own account")
    db.delete(user)
    db.flush()
    _log_user_activity(scope, principal, user_id, "delete")
    logger.info("User %s deleted from company %s", user_id, scope.company_id)


def change_own_password(db, principal: Optional[Principal], current_password: str, new_password: str) -> None:
    scope = admit(principal, entity_type="user")
    user = _load_tenant_user(db, principal, scope, principal.id, None)
    if not verify_password(str(current_password or ""), user.password_hash):
        raise ValidationError("Current password is incorrect")
    user.password_hash = hash_password(validate_password(new_password))
    db.flush()
    _log_user_activity(scope, principal, user.id, "update", ["password"])