import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

import actions
import auth_actions
from config import get_settings
from database import Base, create_store_engine
from main import app, get_db
from models import AuthIdentity, User
from policy import balance_edit_allowed
from schemas import (
    MagicLinkIn,
    PasswordChangeIn,
    ProfileUpdateIn,
    SignInIn,
    SignUpIn,
    UserUpdateIn,
)
from services import CategoryService


def _sign_up(session: Session, name: str, email: str) -> str:
    result = auth_actions.sign_up(
        session, SignUpIn(email=email, password="secret1", name=name)
    )
    assert result.success is True
    return result.data.token


def _make_admin(session: Session, token: str) -> None:
    profile = auth_actions.get_user_profile(session, token)
    session.get(User, profile.data.id).is_admin = True
    session.commit()


def test_sign_up_creates_default_profile() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        result = auth_actions.sign_up(
            session, SignUpIn(email="an@example.com", password="secret1", name=" An ")
        )
        assert result.success is True
        assert result.error is None
        user = result.data.user
        assert user.name == "An"
        assert user.avatar == "👤"
        assert user.total_balance == 0
        assert user.is_admin is False

        signed_in = auth_actions.sign_in(
            session, SignInIn(email="an@example.com", password="secret1")
        )
        assert signed_in.success is True
        assert signed_in.data.user.id == user.id

        wrong = auth_actions.sign_in(
            session, SignInIn(email="an@example.com", password="nope")
        )
        assert wrong.success is False
        assert wrong.error_kind == "Unauthenticated"

        duplicate = auth_actions.sign_up(
            session, SignUpIn(email="AN@example.com", password="secret1", name="An")
        )
        assert duplicate.success is False
        assert duplicate.error_kind == "Conflict"


def test_admin_gates_and_registration_toggle() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        admin = _sign_up(session, "An", "an@example.com")
        member = _sign_up(session, "Bao", "bao@example.com")
        _make_admin(session, admin)

        denied = auth_actions.toggle_registration(session, member, False)
        assert denied.success is False
        assert denied.error_kind == "Unauthorized"

        assert auth_actions.toggle_registration(session, admin, False).success is True
        assert auth_actions.set_stash_name(session, admin, "Piggy bank").success is True
        settings = auth_actions.get_app_settings(session).data
        assert settings.registration_enabled is False
        assert settings.allow_balance_edit is True
        assert settings.stash_name == "Piggy bank"

        blocked = auth_actions.sign_up(
            session, SignUpIn(email="cuong@example.com", password="secret1", name="Cuong")
        )
        assert blocked.success is False
        assert blocked.error_kind == "Unauthorized"
        assert session.scalar(
            select(AuthIdentity).where(AuthIdentity.email == "cuong@example.com")
        ) is None

        magic = auth_actions.sign_in_with_magic_link(
            session, MagicLinkIn(email="cuong@example.com", site_url="https://home.example")
        )
        assert magic.success is False
        assert magic.error_kind == "Unauthorized"


def test_update_user_respects_balance_edit_flag() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        admin = _sign_up(session, "An", "an@example.com")
        member = _sign_up(session, "Bao", "bao@example.com")
        _make_admin(session, admin)
        member_id = auth_actions.get_user_profile(session, member).data.id
        admin_id = auth_actions.get_user_profile(session, admin).data.id

        edited = actions.update_user(
            session, member, UserUpdateIn(id=member_id, name="Bao", total_balance=90000)
        )
        assert edited.success is True
        assert edited.data.total_balance == 90000

        foreign = actions.update_user(
            session, member, UserUpdateIn(id=admin_id, name="Hacked", total_balance=0)
        )
        assert foreign.success is False
        assert foreign.error_kind == "Unauthorized"

        assert balance_edit_allowed(session) is True
        assert auth_actions.toggle_balance_edit(session, admin, False).success is True
        assert balance_edit_allowed(session) is False
        blocked = actions.update_user(
            session, member, UserUpdateIn(id=member_id, name="Bao B", total_balance=1)
        )
        assert blocked.success is False
        assert blocked.error_kind == "Unauthorized"
        user = session.get(User, member_id)
        assert user.name == "Bao"
        assert user.total_balance == 90000

        renamed = actions.update_user(
            session, member, UserUpdateIn(id=member_id, name="Bao B", total_balance=90000)
        )
        assert renamed.success is True
        assert renamed.data.name == "Bao B"


def test_profile_password_and_sign_out() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        token = _sign_up(session, "An", "an@example.com")

        updated = auth_actions.update_profile(
            session, token, ProfileUpdateIn(avatar_url="https://img.example/an.png")
        )
        assert updated.data.avatar_url == "https://img.example/an.png"
        cleared = auth_actions.update_profile(
            session, token, ProfileUpdateIn(avatar_url=None)
        )
        assert cleared.data.avatar_url is None
        assert cleared.data.name == "An"

        changed = auth_actions.change_password(
            session, token, PasswordChangeIn(new_password="secret2")
        )
        assert changed.success is True
        assert auth_actions.get_user_profile(session, token).error_kind == (
            "Unauthenticated"
        )

        fresh = changed.data.token
        assert auth_actions.get_user_profile(session, fresh).success is True
        assert auth_actions.sign_out(session, fresh).success is True
        assert auth_actions.get_user_profile(session, fresh).success is False


def test_magic_link_completion_creates_profile(caplog) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with caplog.at_level("INFO"):
            sent = auth_actions.sign_in_with_magic_link(
                session, MagicLinkIn(email="bao@example.com", site_url="https://home.example")
            )
        assert sent.success is True
        assert sent.data is None
        line = next(r.getMessage() for r in caplog.records if "magic_link_issued" in r.getMessage())
        token = line.split("token=", 1)[1]

        completed = auth_actions.complete_magic_link(session, token)
        assert completed.success is True
        assert completed.data.user.name == "bao"
        assert completed.data.user.email == "bao@example.com"

        reused = auth_actions.complete_magic_link(session, token)
        assert reused.success is False
        assert reused.error_kind == "Unauthenticated"


def test_store_failures_become_results(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def boom(self):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(CategoryService, "list_all", boom)
    with Session(engine) as session:
        result = actions.get_categories(session)
        assert result.success is False
        assert result.error_kind == "StoreError"
        assert "disk I/O error" in result.error


@pytest.fixture
def http():
    get_settings.cache_clear()
    engine = create_store_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_api_requires_session(http) -> None:
    response = http.get("/api/summary")
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error_kind"] == "Unauthenticated"

    response = http.get("/api/summary", headers={"Authorization": "Bearer forged"})
    assert response.status_code == 401


def test_api_flow_with_bearer_token(http) -> None:
    response = http.post(
        "/api/auth/sign-up",
        json={"email": "an@example.com", "password": "secret1", "name": "An"},
    )
    assert response.status_code == 200
    token = response.json()["data"]["token"]
    user_id = response.json()["data"]["user"]["id"]
    auth = {"Authorization": f"Bearer {token}"}
    http.cookies.clear()

    response = http.post(
        "/api/categories", json={"name": "Food", "type": "expense"}, headers=auth
    )
    assert response.status_code == 200
    food_id = response.json()["data"]["id"]

    response = http.post(
        "/api/transactions",
        json={
            "user_id": user_id,
            "category_id": food_id,
            "amount": 45000,
            "type": "expense",
            "note": "Bún chả",
        },
        headers=auth,
    )
    assert response.status_code == 200
    assert response.json()["data"]["category"]["name"] == "Food"

    response = http.delete(f"/api/categories/{food_id}", headers=auth)
    assert response.status_code == 409
    assert response.json()["error"] == "Cannot delete: 1 transactions use this category"

    response = http.post(
        "/api/debts",
        json={"user_id": user_id, "debtor_name": "Alice", "amount": 100000},
        headers=auth,
    )
    debt_id = response.json()["data"]["id"]
    response = http.post(f"/api/debts/{debt_id}/resolve", headers=auth)
    assert response.status_code == 412

    http.post(
        "/api/categories",
        json={"name": "Debt Repayment", "type": "income"},
        headers=auth,
    )
    assert http.post(f"/api/debts/{debt_id}/resolve", headers=auth).status_code == 200
    assert http.post(f"/api/debts/{debt_id}/resolve", headers=auth).status_code == 409

    response = http.get("/api/summary", headers=auth)
    assert response.status_code == 200
    summary = response.json()["data"][0]
    assert summary["balance"] == 55000

    response = http.get("/api/stats/comparison", headers=auth)
    assert len(response.json()["data"]) == 6

    response = http.post("/api/stash", json={"delta": 60000}, headers=auth)
    assert response.status_code == 400
    response = http.post("/api/stash", json={"delta": 50000}, headers=auth)
    assert response.json()["data"]["stashed_amount"] == 50000

    response = http.get("/api/transactions", params={"type": "income"}, headers=auth)
    assert [t["note"] for t in response.json()["data"]] == ["Debt repaid by Alice"]

    response = http.post("/api/admin/registration", json={"enabled": False}, headers=auth)
    assert response.status_code == 403
