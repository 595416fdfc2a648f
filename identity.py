"""Local stand-in for the external identity provider.

Only the application-facing behaviour lives here: registering an email,
checking a password, and issuing/revoking signed session tokens. Tokens carry
the identity's ``session_version`` so that signing out or changing the
password invalidates every token issued before.
"""

import logging
import re
from typing import Optional
from urllib.parse import urlencode

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from config import Settings, get_settings
from errors import Conflict, Unauthenticated, ValidationError
from models import AuthIdentity


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    clean = (email or "").strip().lower()
    if not _EMAIL_RE.match(clean):
        raise ValidationError("Invalid email address")
    return clean


def _check_password_rules(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


class IdentityProvider:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def _serializer(self, salt: str) -> URLSafeTimedSerializer:
        return URLSafeTimedSerializer(self.settings.secret_key, salt=salt)

    def find(self, email: str) -> Optional[AuthIdentity]:
        return self.session.scalar(
            select(AuthIdentity).where(
                func.lower(AuthIdentity.email) == email.strip().lower()
            )
        )

    def register(self, email: str, password: str) -> AuthIdentity:
        clean = normalize_email(email)
        _check_password_rules(password)
        if self.find(clean):
            raise Conflict("Email already registered")
        identity = AuthIdentity(
            email=clean,
            password_hash=generate_password_hash(password),
            session_version=0,
        )
        self.session.add(identity)
        self.session.flush()
        logger.info(f"identity_registered: identity_id={identity.id}")
        return identity

    def authenticate(self, email: str, password: str) -> AuthIdentity:
        identity = self.find(email or "")
        if (
            identity is None
            or not identity.password_hash
            or not check_password_hash(identity.password_hash, password or "")
        ):
            raise Unauthenticated("Invalid email or password")
        return identity

    def issue_session_token(self, identity: AuthIdentity) -> str:
        return self._serializer("session").dumps(
            {"i": identity.id, "v": identity.session_version}
        )

    def resolve_session_token(self, token: Optional[str]) -> AuthIdentity:
        if not token:
            raise Unauthenticated("Not signed in")
        max_age = self.settings.session_max_age_hours * 3600
        try:
            data = self._serializer("session").loads(token, max_age=max_age)
        except SignatureExpired as exc:
            raise Unauthenticated("Session expired") from exc
        except BadSignature as exc:
            raise Unauthenticated("Invalid session") from exc
        identity = self.session.get(AuthIdentity, data.get("i"))
        if identity is None or identity.session_version != data.get("v"):
            raise Unauthenticated("Invalid session")
        return identity

    def revoke_sessions(self, identity: AuthIdentity) -> None:
        identity.session_version += 1
        self.session.flush()

    def issue_magic_link(self, email: str, site_url: str) -> str:
        clean = normalize_email(email)
        identity = self.find(clean)
        if identity is None:
            identity = AuthIdentity(email=clean, password_hash=None, session_version=0)
            self.session.add(identity)
            self.session.flush()
        token = self._serializer("magic-link").dumps(
            {"i": identity.id, "v": identity.session_version}
        )
        return f"{site_url.rstrip('/')}/auth/callback?{urlencode({'token': token})}"

    def consume_magic_link(self, token: str) -> AuthIdentity:
        max_age = self.settings.magic_link_max_age_minutes * 60
        try:
            data = self._serializer("magic-link").loads(token, max_age=max_age)
        except SignatureExpired as exc:
            raise Unauthenticated("Link expired") from exc
        except BadSignature as exc:
            raise Unauthenticated("Invalid link") from exc
        identity = self.session.get(AuthIdentity, data.get("i"))
        if identity is None or identity.session_version != data.get("v"):
            raise Unauthenticated("Invalid link")
        return identity

    def change_password(self, identity: AuthIdentity, new_password: str) -> None:
        _check_password_rules(new_password)
        if identity.password_hash and check_password_hash(
            identity.password_hash, new_password
        ):
            raise ValidationError("New password must differ from the old one")
        identity.password_hash = generate_password_hash(new_password)
        self.revoke_sessions(identity)
        logger.info(f"password_changed: identity_id={identity.id}")
