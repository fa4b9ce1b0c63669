"""Tenant context for billing requests."""

from __future__ import annotations

from typing import Optional

from flask import abort, g, session

from extensions import db
from models import Tenant


def load_current_tenant() -> None:
    """Set ``g.current_tenant`` from the session's ``active_tenant_id``.

    Inactive tenants are still loaded: a suspended tenant must be able to
    reach its billing pages to pay.
    """
    tenant_id = session.get("active_tenant_id")
    tenant = db.session.get(Tenant, tenant_id) if tenant_id else None
    if tenant_id and tenant is None:
        session.pop("active_tenant_id", None)
    g.current_tenant = tenant


def get_current_tenant() -> Optional[Tenant]:
    """Return the active Tenant object from ``g``, or None."""
    return getattr(g, "current_tenant", None)


def get_current_tenant_id() -> Optional[int]:
    """Return the active tenant_id from ``g``, or None."""
    tenant = get_current_tenant()
    return tenant.id if tenant else None


def require_tenant() -> int:
    """Return the current tenant_id or abort with 403."""
    tid = get_current_tenant_id()
    if tid is None:
        abort(403, description="No tenant selected.")
    return tid
