"""Tenant and actor context passed explicitly into every engine call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

LEGACY_SCOPE = "legacy"


@dataclass(frozen=True)
class TenantContext:
    """Who is acting, and on behalf of which organization.

    ``organization_id`` of None is the single-tenant legacy scope: it matches
    only rows whose organization is also null, never every row.
    """

    organization_id: UUID | None
    actor_id: UUID | None = None

    @classmethod
    def legacy(cls, actor_id: UUID | None = None) -> TenantContext:
        return cls(organization_id=None, actor_id=actor_id)

    @property
    def scope_key(self) -> str:
        """Non-null key for per-tenant uniqueness (numbers, counters)."""
        if self.organization_id is None:
            return LEGACY_SCOPE
        return str(self.organization_id)

    def owns(self, model: Any) -> Any:
        """SQL predicate restricting ``model`` rows to this tenant."""
        column = model.organization_id
        if self.organization_id is None:
            return column.is_(None)
        return column == self.organization_id
