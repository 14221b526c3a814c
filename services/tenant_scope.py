from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from services.crm_errors import ConfigurationError
from services.principal import Principal

logger = logging.getLogger(__name__)

TENANT_FIELD = "companyId"
# Caller-supplied keys that could otherwise smuggle a different tenant into a query or document.
TENANT_ALIASES = frozenset({"companyId", "company_id", "tenantId", "tenant_id", "PartitionKey"})


@dataclass(frozen=True)
class TenantScope:
    company_id: str

    def as_filter(self) -> Dict[str, str]:
        return {TENANT_FIELD: self.company_id}

    def merge(self, query: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """AND the tenant condition into a query; a caller's own tenant keys are dropped."""
        merged = strip_tenant_fields(query)
        merged.update(self.as_filter())
        return merged

    def stamp(self, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Return a document body owned by this tenant."""
        return self.merge(payload)

    def owns(self, item: Optional[Mapping[str, Any]]) -> bool:
        if not item:
            return False
        return str(item.get(TENANT_FIELD) or "") == self.company_id

    @property
    def sql_company_id(self) -> int:
        try:
            return int(self.company_id)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("tenant id is not a valid company id") from exc

    def apply_to_query(self, query, model):
        """Restrict a SQLAlchemy query over a tenant-owned model."""
        return query.filter(model.company_id == self.sql_company_id)


def strip_tenant_fields(payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not payload:
        return {}
    return {key: value for key, value in payload.items() if key not in TENANT_ALIASES}


def resolve_tenant_scope(principal: Optional[Principal]) -> TenantScope:
    company_id = str(getattr(principal, "company_id", None) or "").strip()
    if not company_id:
        logger.error(
            "Principal without tenant id reached scope resolution (principal=%s)",
            getattr(principal, "id", None),
        )
        raise ConfigurationError("principal has no tenant id")
    return TenantScope(company_id=company_id)
