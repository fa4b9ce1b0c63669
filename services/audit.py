"""Audit logging service."""

from __future__ import annotations

import json
from typing import Optional

from extensions import db
from models import AuditLog


def log_action(
    tenant_id: Optional[int],
    action: str,
    entity_id: Optional[int],
    details=None,
    *,
    source: str = "system",
    entity_type: str = "subscription",
) -> None:
    """Record an audit log entry for a billing transition.

    NOTE: This does NOT commit; the row lands in the caller's transaction,
    together with the change it describes.
    """
    if details is not None and not isinstance(details, str):
        details = json.dumps(details, default=str, sort_keys=True)
    db.session.add(
        AuditLog(
            tenant_id=tenant_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            source=source,
            details=details or "",
        )
    )
