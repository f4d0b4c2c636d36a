from __future__ import annotations

from typing import Any

from sqlalchemy import ColumnElement


class TenantPredicateError(RuntimeError):
    """A tenant-owned table was about to be queried without a tenant id."""


def tenant_predicate(model: Any, tenant_id: str | None) -> ColumnElement[bool]:
    # Every verdict, remediation, allowlist and audit query goes through here.
    if not tenant_id or not tenant_id.strip():
        raise TenantPredicateError(f"{model.__tablename__} query is missing tenant_id")
    return model.tenant_id == tenant_id
