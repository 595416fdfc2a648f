from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from errors import NotFound, Unauthorized
from identity import IdentityProvider
from models import AuthIdentity, User
from services import (
    ALLOW_BALANCE_EDIT,
    REGISTRATION_ENABLED,
    SettingsService,
    UserService,
)


@dataclass(frozen=True)
class Viewer:
    identity: AuthIdentity
    user: Optional[User]


def current_viewer(session: Session, token: Optional[str]) -> Viewer:
    identity = IdentityProvider(session).resolve_session_token(token)
    return Viewer(identity=identity, user=UserService(session).get_by_auth_id(identity.id))


def require_user(viewer: Viewer) -> User:
    if viewer.user is None:
        raise NotFound("Profile not found")
    return viewer.user


def require_admin(viewer: Viewer) -> User:
    user = require_user(viewer)
    if not user.is_admin:
        raise Unauthorized("Admin rights required")
    return user


def registration_allowed(session: Session) -> bool:
    return SettingsService(session).is_enabled(REGISTRATION_ENABLED)


def balance_edit_allowed(session: Session) -> bool:
    return SettingsService(session).is_enabled(ALLOW_BALANCE_EDIT)
