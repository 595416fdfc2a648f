import logging
from typing import Optional

from sqlalchemy.orm import Session

from actions import contract_action
from errors import Unauthorized
from identity import IdentityProvider, normalize_email
from policy import current_viewer, registration_allowed, require_admin, require_user
from schemas import (
    MagicLinkIn,
    PasswordChangeIn,
    ProfileUpdateIn,
    SessionOut,
    SignInIn,
    SignUpIn,
    UserOut,
)
from services import (
    ALLOW_BALANCE_EDIT,
    REGISTRATION_ENABLED,
    STASH_NAME,
    SettingsService,
    UserService,
)


logger = logging.getLogger(__name__)


def _session_out(provider: IdentityProvider, identity, user) -> SessionOut:
    return SessionOut(
        token=provider.issue_session_token(identity),
        user=UserOut.model_validate(user) if user is not None else None,
    )


@contract_action
def get_app_settings(session: Session):
    return SettingsService(session).get()


@contract_action
def sign_up(session: Session, data: SignUpIn):
    if not registration_allowed(session):
        raise Unauthorized("Registration has been disabled by an administrator")
    provider = IdentityProvider(session)
    identity = provider.register(data.email, data.password)
    user = UserService(session).create_profile(
        email=identity.email, name=data.name, auth_id=identity.id
    )
    session.commit()
    logger.info(f"sign_up: user_id={user.id} identity_id={identity.id}")
    return _session_out(provider, identity, user)


@contract_action
def sign_in(session: Session, data: SignInIn):
    provider = IdentityProvider(session)
    identity = provider.authenticate(data.email, data.password)
    user = UserService(session).get_by_auth_id(identity.id)
    return _session_out(provider, identity, user)


@contract_action
def sign_in_with_magic_link(session: Session, data: MagicLinkIn):
    provider = IdentityProvider(session)
    email = normalize_email(data.email)
    if provider.find(email) is None and not registration_allowed(session):
        raise Unauthorized("Registration has been disabled by an administrator")
    link = provider.issue_magic_link(email, data.site_url)
    session.commit()
    # no mail transport; the link is handed to whoever reads the log
    logger.info(f"magic_link_issued: email={email} link={link}")
    return None


@contract_action
def complete_magic_link(session: Session, token: str):
    provider = IdentityProvider(session)
    identity = provider.consume_magic_link(token)
    users = UserService(session)
    user = users.get_by_auth_id(identity.id)
    if user is None:
        if not registration_allowed(session):
            raise Unauthorized("Registration has been disabled by an administrator")
        user = users.create_profile(
            email=identity.email,
            name=identity.email.split("@", 1)[0],
            auth_id=identity.id,
        )
    # single use: consuming the link moves the version past it
    provider.revoke_sessions(identity)
    session.commit()
    return _session_out(provider, identity, user)


@contract_action
def sign_out(session: Session, token: Optional[str]):
    viewer = current_viewer(session, token)
    IdentityProvider(session).revoke_sessions(viewer.identity)
    session.commit()
    logger.info(f"sign_out: identity_id={viewer.identity.id}")
    return None


@contract_action
def get_user_profile(session: Session, token: Optional[str]):
    return UserOut.model_validate(require_user(current_viewer(session, token)))


@contract_action
def update_profile(session: Session, token: Optional[str], data: ProfileUpdateIn):
    user = require_user(current_viewer(session, token))
    updated = UserService(session).update_profile(
        user,
        name=data.name,
        avatar_url=data.avatar_url,
        clear_avatar="avatar_url" in data.model_fields_set and data.avatar_url is None,
    )
    return UserOut.model_validate(updated)


@contract_action
def change_password(session: Session, token: Optional[str], data: PasswordChangeIn):
    viewer = current_viewer(session, token)
    provider = IdentityProvider(session)
    provider.change_password(viewer.identity, data.new_password)
    session.commit()
    # the old token is dead now; hand back a fresh one
    return _session_out(provider, viewer.identity, viewer.user)


@contract_action
def toggle_registration(session: Session, token: Optional[str], enabled: bool):
    require_admin(current_viewer(session, token))
    SettingsService(session).set_flag(REGISTRATION_ENABLED, enabled)
    return None


@contract_action
def toggle_balance_edit(session: Session, token: Optional[str], enabled: bool):
    require_admin(current_viewer(session, token))
    SettingsService(session).set_flag(ALLOW_BALANCE_EDIT, enabled)
    return None


@contract_action
def set_stash_name(session: Session, token: Optional[str], name: str):
    require_admin(current_viewer(session, token))
    SettingsService(session).set_value(STASH_NAME, name.strip() or "Stash")
    return None
