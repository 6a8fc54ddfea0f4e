"""
Sponsor completion notices.

A sponsor pays for a test but never sees its outcome. The notice handed to a
notifier therefore only says *that* a sponsored test was completed, where and
when: it has no field that could carry result parameters.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.screening import Notification
from app.services.pagination import Page, paginate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionNotice:
    code: str
    sponsor_id: UUID | None
    sponsor_type: str
    center_name: str
    completed_at: datetime

    def as_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["sponsor_id"] = str(self.sponsor_id) if self.sponsor_id else None
        payload["completed_at"] = self.completed_at.isoformat()
        return payload


class SponsorNotifier(Protocol):
    def notify(self, db: Session, notice: CompletionNotice) -> None:
        ...


class InAppSponsorNotifier:
    """Stores the notice as an in-app notification for the sponsor's account."""

    def notify(self, db: Session, notice: CompletionNotice) -> None:
        if notice.sponsor_id is None:
            logger.info("Sponsor of code %s has no account, nothing stored", notice.code)
            return
        db.add(
            Notification(
                recipient_type="sponsor",
                user_id=notice.sponsor_id,
                type="test_completed",
                title="Sponsored test completed",
                message=f"The test for code {notice.code} was completed at {notice.center_name}.",
                data=notice.as_payload(),
            )
        )
        db.flush()
        logger.info("Sponsor %s notified of completion for code %s", notice.sponsor_id, notice.code)


def list_notifications(db: Session, user_id: UUID, *, page: int = 0, size: int = 20) -> Page:
    stmt = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
    )
    return paginate(db, stmt, page=page, size=size)
