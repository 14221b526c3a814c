from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn, Optional

from services.crm_errors import ConfigurationError, CrmError, Forbidden, Unauthenticated
from services.crm_rbac import NAVIGATION_PERMISSIONS, Permission, has_permission
from services.principal import Principal
from services.tenant_scope import TenantScope, resolve_tenant_scope

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
DEFAULT_DASHBOARD_PATH = "/dashboard"


class GuardOutcome(str, Enum):
    ADMITTED = "admitted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class GuardDecision:
    outcome: GuardOutcome
    scope: Optional[TenantScope] = None
    error: Optional[CrmError] = None

    @property
    def admitted(self) -> bool:
        return self.outcome is GuardOutcome.ADMITTED

    def require(self) -> TenantScope:
        """Return the attached scope, or raise the rejection."""
        if self.admitted and self.scope is not None:
            return self.scope
        raise self.error or Forbidden()


@dataclass(frozen=True)
class UiRouteDecision:
    render: bool
    redirect_to: Optional[str] = None


def _reject(error: CrmError) -> GuardDecision:
    return GuardDecision(outcome=GuardOutcome.REJECTED, error=error)


def _log_denial(
    principal: Optional[Principal],
    permission: Optional[Permission],
    entity_type: Optional[str],
    error: CrmError,
) -> None:
    # Metadata only; record contents never reach the log.
    logger.warning(
        "Guard denied request: role=%s permission=%s entity=%s code=%s",
        principal.role.value if principal is not None and principal.role else None,
        getattr(permission, "value", permission),
        entity_type,
        error.code,
    )


def deny(
    principal: Optional[Principal],
    error: CrmError,
    *,
    permission: Optional[Permission] = None,
    entity_type: Optional[str] = None,
) -> NoReturn:
    """
    Log a denial raised after admission and raise it.

    Ownership failures, hidden records and tenant mismatches all pass
    through here so every rejection is audited the same way.
    """
    _log_denial(principal, permission, entity_type, error)
    raise error


def evaluate(
    principal: Optional[Principal],
    permission: Optional[Permission] = None,
    *,
    entity_type: Optional[str] = None,
) -> GuardDecision:
    """
    Decide whether a request may proceed.

    Unauthenticated principals are rejected first, then the permission is
    checked, and only then is the tenant scope resolved and attached. Nothing
    here touches storage, and the role is read from the principal on every
    call.
    """
    if principal is None or not principal.is_authenticated:
        logger.info("Guard rejected unauthenticated request (entity=%s)", entity_type)
        return _reject(Unauthenticated())

    if permission is not None and not has_permission(principal.role, permission):
        error = Forbidden()
        _log_denial(principal, permission, entity_type, error)
        return _reject(error)

    try:
        scope = resolve_tenant_scope(principal)
    except ConfigurationError as exc:
        return _reject(exc)
    return GuardDecision(outcome=GuardOutcome.ADMITTED, scope=scope)


def admit(
    principal: Optional[Principal],
    permission: Optional[Permission] = None,
    *,
    entity_type: Optional[str] = None,
) -> TenantScope:
    return evaluate(principal, permission, entity_type=entity_type).require()


def ui_route_decision(
    principal: Optional[Principal],
    href: str,
    *,
    redirect_to: str = DEFAULT_DASHBOARD_PATH,
) -> UiRouteDecision:
    """Same decision as the API guard, expressed as a page redirect."""
    permission = NAVIGATION_PERMISSIONS.get(str(href or "").rstrip("/") or "/")
    decision = evaluate(principal, permission, entity_type="page")
    if decision.admitted:
        return UiRouteDecision(render=True)
    if isinstance(decision.error, (Unauthenticated, ConfigurationError)):
        return UiRouteDecision(render=False, redirect_to=LOGIN_PATH)
    return UiRouteDecision(render=False, redirect_to=redirect_to)
