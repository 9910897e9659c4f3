"""Tenant context and data isolation services.

Core services take ``tenant_id`` as an explicit argument.  The request-level
helpers here only resolve that id for the JSON API, where an upstream
gateway authenticates the caller and passes the tenant in ``X-Tenant-ID``.
"""

from __future__ import annotations

from typing import Optional

from flask import g, request
from sqlalchemy import event

from errors import NotFoundError, ValidationError
from extensions import db
from models import Tenant

TENANT_HEADER = "X-Tenant-ID"


def load_request_tenant() -> None:
    """Resolve the tenant named in the request header onto ``g``."""
    g.current_tenant = None
    raw = request.headers.get(TENANT_HEADER, "").strip()
    if not raw:
        return
    if not raw.isdigit():
        raise ValidationError(f"{TENANT_HEADER} must be numeric")
    tenant = db.session.get(Tenant, int(raw))
    if tenant is None or not tenant.is_active:
        raise NotFoundError("Tenant not found")
    g.current_tenant = tenant


def get_current_tenant_id() -> Optional[int]:
    """Return the active tenant_id from ``g``, or None."""
    tenant = getattr(g, "current_tenant", None)
    return tenant.id if tenant else None


def require_tenant() -> int:
    """Return the current tenant_id or raise."""
    tid = get_current_tenant_id()
    if tid is None:
        raise ValidationError(f"Missing {TENANT_HEADER} header")
    return tid


def tenant_query(model, tenant_id: int):
    """Return a query on *model* filtered to *tenant_id*.

    Usage::

        deals = tenant_query(Deal, tid).filter_by(status="open").all()
    """
    return model.query.filter_by(tenant_id=tenant_id)


def tenant_get(model, tenant_id: int, obj_id):
    """Fetch a single object by PK, verifying it belongs to *tenant_id*.

    Raises NotFoundError for missing rows and rows of other tenants alike.
    """
    obj = model.query.filter_by(id=obj_id, tenant_id=tenant_id).first()
    if obj is None:
        raise NotFoundError(f"{model.__name__} {obj_id} not found")
    return obj


class TenantSecurityError(Exception):
    """Raised when a cross-tenant write is attempted."""


def _enforce_tenant_on_flush(session, flush_context):
    """Verify that all new/dirty tenant-scoped objects match the request tenant.

    Only active inside a request that resolved a tenant.  Webhook requests
    resolve their tenant from looked-up rows and are not guarded here.
    """
    try:
        tid = get_current_tenant_id()
    except RuntimeError:
        # Outside request context (CLI, tests without request ctx)
        return

    if tid is None:
        return

    for obj in list(session.new) + list(session.dirty):
        obj_tid = getattr(obj, "tenant_id", None)
        if obj_tid is not None and obj_tid != tid:
            raise TenantSecurityError(
                f"Cross-tenant write blocked: {type(obj).__name__} "
                f"has tenant_id={obj_tid}, active tenant is {tid}"
            )


_guards_registered = False


def register_tenant_guards(app):
    """Register the after_flush event listener.  Call once during app init."""
    global _guards_registered
    if _guards_registered:
        return
    event.listen(db.session, "after_flush", _enforce_tenant_on_flush)
    _guards_registered = True
