from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SALES = "sales"
    SUPPORT = "support"


class Permission(str, Enum):
    # Navigation access
    ACCESS_DASHBOARD = "canAccessDashboard"
    ACCESS_LEADS = "canAccessLeads"
    ACCESS_CUSTOMERS = "canAccessCustomers"
    ACCESS_DEALS = "canAccessDeals"
    ACCESS_TASKS = "canAccessTasks"
    ACCESS_REPORTS = "canAccessReports"
    ACCESS_USER_MANAGEMENT = "canAccessUserManagement"
    ACCESS_SYSTEM_CONFIGURATION = "canAccessSystemConfiguration"

    # User management
    CREATE_USERS = "canCreateUsers"
    EDIT_USERS = "canEditUsers"
    DELETE_USERS = "canDeleteUsers"
    VIEW_ALL_USERS = "canViewAllUsers"

    # Data access
    VIEW_ALL_LEADS = "canViewAllLeads"
    VIEW_ALL_CUSTOMERS = "canViewAllCustomers"
    VIEW_ALL_DEALS = "canViewAllDeals"
    VIEW_ALL_TASKS = "canViewAllTasks"
    VIEW_ALL_REPORTS = "canViewAllReports"

    # Record mutation
    MANAGE_LEADS = "canManageLeads"
    MANAGE_CUSTOMERS = "canManageCustomers"
    MANAGE_DEALS = "canManageDeals"
    MANAGE_TASKS = "canManageTasks"
    ADD_CUSTOMER_NOTES = "canAddCustomerNotes"
    UPDATE_ALL_LEADS = "canUpdateAllLeads"
    UPDATE_ALL_CUSTOMERS = "canUpdateAllCustomers"
    UPDATE_ALL_DEALS = "canUpdateAllDeals"
    UPDATE_ALL_TASKS = "canUpdateAllTasks"

    # Actions
    ASSIGN_LEADS = "canAssignLeads"
    ASSIGN_TASKS = "canAssignTasks"
    APPROVE_DEALS = "canApproveDeals"
    DELETE_ANY_DATA = "canDeleteAnyData"
    CONVERT_LEADS = "canConvertLeads"
    CONVERT_ALL_LEADS = "canConvertAllLeads"
    RUN_BACKUPS = "canRunBackups"


_P = Permission

# Every grant is spelled out; anything not listed here is denied.
_ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.ADMIN: frozenset(
        {
            _P.ACCESS_DASHBOARD,
            _P.ACCESS_LEADS,
            _P.ACCESS_CUSTOMERS,
            _P.ACCESS_DEALS,
            _P.ACCESS_TASKS,
            _P.ACCESS_REPORTS,
            _P.ACCESS_USER_MANAGEMENT,
            _P.ACCESS_SYSTEM_CONFIGURATION,
            _P.CREATE_USERS,
            _P.EDIT_USERS,
            _P.DELETE_USERS,
            _P.VIEW_ALL_USERS,
            _P.VIEW_ALL_LEADS,
            _P.VIEW_ALL_CUSTOMERS,
            _P.VIEW_ALL_DEALS,
            _P.VIEW_ALL_TASKS,
            _P.VIEW_ALL_REPORTS,
            _P.MANAGE_LEADS,
            _P.MANAGE_CUSTOMERS,
            _P.MANAGE_DEALS,
            _P.MANAGE_TASKS,
            _P.ADD_CUSTOMER_NOTES,
            _P.UPDATE_ALL_LEADS,
            _P.UPDATE_ALL_CUSTOMERS,
            _P.UPDATE_ALL_DEALS,
            _P.UPDATE_ALL_TASKS,
            _P.ASSIGN_LEADS,
            _P.ASSIGN_TASKS,
            _P.APPROVE_DEALS,
            _P.DELETE_ANY_DATA,
            _P.CONVERT_LEADS,
            _P.CONVERT_ALL_LEADS,
            _P.RUN_BACKUPS,
        }
    ),
    Role.MANAGER: frozenset(
        {
            _P.ACCESS_DASHBOARD,
            _P.ACCESS_LEADS,
            _P.ACCESS_CUSTOMERS,
            _P.ACCESS_DEALS,
            _P.ACCESS_TASKS,
            _P.ACCESS_REPORTS,
            _P.ACCESS_USER_MANAGEMENT,
            _P.CREATE_USERS,
            _P.EDIT_USERS,
            _P.VIEW_ALL_USERS,
            _P.VIEW_ALL_LEADS,
            _P.VIEW_ALL_CUSTOMERS,
            _P.VIEW_ALL_DEALS,
            _P.VIEW_ALL_TASKS,
            _P.VIEW_ALL_REPORTS,
            _P.MANAGE_LEADS,
            _P.MANAGE_CUSTOMERS,
            _P.MANAGE_DEALS,
            _P.MANAGE_TASKS,
            _P.ADD_CUSTOMER_NOTES,
            _P.UPDATE_ALL_LEADS,
            _P.UPDATE_ALL_CUSTOMERS,
            _P.UPDATE_ALL_DEALS,
            _P.UPDATE_ALL_TASKS,
            _P.ASSIGN_LEADS,
            _P.ASSIGN_TASKS,
            _P.APPROVE_DEALS,
            _P.CONVERT_LEADS,
            _P.CONVERT_ALL_LEADS,
        }
    ),
    Role.SALES: frozenset(
        {
            _P.ACCESS_DASHBOARD,
            _P.ACCESS_LEADS,
            _P.ACCESS_CUSTOMERS,
            _P.ACCESS_DEALS,
            _P.ACCESS_TASKS,
            _P.MANAGE_LEADS,
            _P.MANAGE_CUSTOMERS,
            _P.MANAGE_DEALS,
            _P.MANAGE_TASKS,
            _P.ADD_CUSTOMER_NOTES,
            _P.CONVERT_LEADS,
        }
    ),
    Role.SUPPORT: frozenset(
        {
            _P.ACCESS_DASHBOARD,
            _P.ACCESS_LEADS,
            _P.ACCESS_CUSTOMERS,
            _P.ACCESS_TASKS,
            _P.MANAGE_TASKS,
            _P.ADD_CUSTOMER_NOTES,
        }
    ),
}

ROLE_PERMISSIONS: Mapping[Role, FrozenSet[Permission]] = MappingProxyType(_ROLE_PERMISSIONS)

# Paths missing from this map are not gated.
NAVIGATION_PERMISSIONS: Mapping[str, Permission] = MappingProxyType(
    {
        "/dashboard": Permission.ACCESS_DASHBOARD,
        "/leads": Permission.ACCESS_LEADS,
        "/customers": Permission.ACCESS_CUSTOMERS,
        "/deals": Permission.ACCESS_DEALS,
        "/tasks": Permission.ACCESS_TASKS,
        "/reports": Permission.ACCESS_REPORTS,
        "/admin/users": Permission.ACCESS_USER_MANAGEMENT,
        "/admin/settings": Permission.ACCESS_SYSTEM_CONFIGURATION,
    }
)


def parse_role(raw_role: Any) -> Optional[Role]:
    if isinstance(raw_role, Role):
        return raw_role
    value = str(raw_role or "").strip().lower()
    try:
        return Role(value)
    except ValueError:
        return None


def parse_permission(raw_permission: Any) -> Optional[Permission]:
    if isinstance(raw_permission, Permission):
        return raw_permission
    try:
        return Permission(str(raw_permission or "").strip())
    except ValueError:
        return None


def role_permissions(role: Any) -> FrozenSet[Permission]:
    """Return the static permission set for a role; unknown roles get an empty set."""
    parsed = parse_role(role)
    if parsed is None:
        return frozenset()
    return ROLE_PERMISSIONS.get(parsed, frozenset())


def has_permission(role: Any, permission: Any) -> bool:
    """
    Pure permission check shared by server-side enforcement and the UI.
    Missing roles, unknown roles and unknown permission keys all return False.
    """
    parsed_permission = parse_permission(permission)
    if parsed_permission is None:
        return False
    return parsed_permission in role_permissions(role)


def can_access_navigation(role: Any, href: str) -> bool:
    permission = NAVIGATION_PERMISSIONS.get(str(href or "").rstrip("/") or "/")
    if permission is None:
        return True
    return has_permission(role, permission)


def permission_map(role: Any) -> Dict[str, bool]:
    """Every permission key with its value for the role, as the UI consumes it."""
    granted = role_permissions(role)
    return {permission.value: permission in granted for permission in Permission}


def navigation_map(role: Any) -> Dict[str, bool]:
    return {href: can_access_navigation(role, href) for href in NAVIGATION_PERMISSIONS}
