"""
Request-scoped session context.

Authentication happens upstream (the auth gateway issues and checks tokens)
and forwards the caller's user id in ``X-User-Id``. Handlers receive the
resolved caller explicitly as a ``SessionContext`` instead of reading any
global "current user" state.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.models.database import get_db
from app.models.enums import UserRole
from app.models.screening import User
from app.services.errors import AuthenticationError, Forbidden
from app.services.notifications import InAppSponsorNotifier, SponsorNotifier

USER_HEADER = "X-User-Id"


@dataclass(frozen=True)
class SessionContext:
    user: User

    @property
    def user_id(self) -> UUID:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role

    def owns_center(self, center_id: UUID) -> bool:
        return any(center.id == center_id for center in self.user.centers)


def get_session_context(
    x_user_id: str | None = Header(default=None, alias=USER_HEADER),
    db: Session = Depends(get_db),
) -> SessionContext:
    if not x_user_id:
        raise AuthenticationError()
    try:
        user_id = UUID(x_user_id)
    except ValueError as err:
        raise AuthenticationError("Invalid user id") from err

    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError("User not found")
    if user.status != "active":
        raise AuthenticationError("User account is not active")
    return SessionContext(user=user)


def require_roles(*roles: UserRole):
    """Dependency factory: the caller must hold one of ``roles``."""
    allowed = {role.value for role in roles}

    def dependency(ctx: SessionContext = Depends(get_session_context)) -> SessionContext:
        if ctx.role not in allowed:
            raise Forbidden()
        return ctx

    return dependency


def get_sponsor_notifier() -> SponsorNotifier:
    return InAppSponsorNotifier()
