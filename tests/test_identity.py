from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import Settings
from database import Base
from errors import Conflict, Unauthenticated, ValidationError
from identity import IdentityProvider


def _settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite:///:memory:",
        timezone="Asia/Ho_Chi_Minh",
        secret_key="test-secret",
        session_max_age_hours=1,
        magic_link_max_age_minutes=5,
        quick_add_keys={},
        reconcile_fix=True,
        reconcile_interval_hours=6,
    )
    values.update(overrides)
    return Settings(**values)


def test_register_and_authenticate() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        provider = IdentityProvider(session, _settings())
        identity = provider.register(" An@Example.com ", "secret1")
        assert identity.email == "an@example.com"
        assert identity.password_hash != "secret1"

        assert provider.authenticate("an@example.com", "secret1").id == identity.id
        with pytest.raises(Unauthenticated):
            provider.authenticate("an@example.com", "wrong-password")
        with pytest.raises(Unauthenticated):
            provider.authenticate("nobody@example.com", "secret1")

        with pytest.raises(Conflict):
            provider.register("an@example.com", "another1")
        with pytest.raises(ValidationError):
            provider.register("bao@example.com", "short")
        with pytest.raises(ValidationError):
            provider.register("not-an-email", "secret1")


def test_session_tokens_are_revocable() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        provider = IdentityProvider(session, _settings())
        identity = provider.register("an@example.com", "secret1")
        token = provider.issue_session_token(identity)

        assert provider.resolve_session_token(token).id == identity.id
        with pytest.raises(Unauthenticated):
            provider.resolve_session_token(None)
        with pytest.raises(Unauthenticated):
            provider.resolve_session_token(token + "x")
        with pytest.raises(Unauthenticated):
            IdentityProvider(session, _settings(secret_key="other")).resolve_session_token(
                token
            )

        provider.revoke_sessions(identity)
        with pytest.raises(Unauthenticated):
            provider.resolve_session_token(token)


def test_expired_session_token_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        identity = IdentityProvider(session, _settings()).register(
            "an@example.com", "secret1"
        )
        token = IdentityProvider(session, _settings()).issue_session_token(identity)
        expired = IdentityProvider(session, _settings(session_max_age_hours=-1))
        with pytest.raises(Unauthenticated, match="expired"):
            expired.resolve_session_token(token)


def test_change_password_rules() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        provider = IdentityProvider(session, _settings())
        identity = provider.register("an@example.com", "secret1")
        token = provider.issue_session_token(identity)

        with pytest.raises(ValidationError):
            provider.change_password(identity, "12345")
        with pytest.raises(ValidationError, match="differ"):
            provider.change_password(identity, "secret1")

        provider.change_password(identity, "secret2")
        assert provider.authenticate("an@example.com", "secret2").id == identity.id
        with pytest.raises(Unauthenticated):
            provider.authenticate("an@example.com", "secret1")
        with pytest.raises(Unauthenticated):
            provider.resolve_session_token(token)


def test_magic_link_round_trip() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        provider = IdentityProvider(session, _settings())
        link = provider.issue_magic_link("bao@example.com", "https://home.example/")

        parsed = urlparse(link)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://home.example/auth/callback"
        )
        token = parse_qs(parsed.query)["token"][0]

        identity = provider.consume_magic_link(token)
        assert identity.email == "bao@example.com"
        assert identity.password_hash is None
        with pytest.raises(Unauthenticated):
            provider.authenticate("bao@example.com", "")
        with pytest.raises(Unauthenticated):
            provider.consume_magic_link("garbage")
        # a session token is not a magic link
        with pytest.raises(Unauthenticated):
            provider.consume_magic_link(provider.issue_session_token(identity))
