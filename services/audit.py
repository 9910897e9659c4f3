"""Audit trail for quote, deal, order and payment changes."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog


def log_action(
    tenant_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    details: Optional[str] = None,
) -> AuditLog:
    """Queue an audit row in the current session.

    NOTE: This does NOT commit. The caller owns the transaction.
    """
    entry = AuditLog(
        tenant_id=tenant_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or "",
    )
    db.session.add(entry)
    return entry
