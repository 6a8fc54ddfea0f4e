"""Audit trail for assessment-code and result transitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.screening import AuditLog

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def log_action(
    db: Session,
    *,
    actor: str | UUID | None,
    action: str,
    resource_type: str,
    resource_id: UUID,
    detail: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """Write an immutable audit log entry. `detail` must not carry PHI."""
    entry = AuditLog(
        actor=str(actor) if actor else SYSTEM_ACTOR,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        detail=detail,
    )
    if timestamp is not None:
        entry.timestamp = timestamp
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", entry.actor, action, resource_type, resource_id)
    return entry
