from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from services.crm_rbac import Role, parse_role


@dataclass(frozen=True)
class Principal:
    id: str
    role: Optional[Role]
    company_id: Optional[str]
    email: Optional[str] = None
    name: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.id) and self.role is not None


def principal_from_user(user: Any) -> Principal:
    """Build a request principal from a users row; the role is read as stored right now."""
    company_id = getattr(user, "company_id", None)
    return Principal(
        id=str(user.id),
        role=parse_role(getattr(user, "role", None)),
        company_id=str(company_id) if company_id is not None else None,
        email=getattr(user, "email", None),
        name=getattr(user, "name", None),
    )
