import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

import actions
import services
from config import get_settings
from database import Base, create_store_engine
from main import app, get_db
from models import Category, Debt, DebtStatus, Transaction, TransactionType, User
from schemas import CategoryIn, DebtIn, TransactionIn
from services import DEBT_REPAYMENT, CategoryService, DebtService, UserService


def _locked_balance(session, user_id, delta):
    raise OperationalError("UPDATE users", {}, Exception("database is locked"))


def test_add_transaction_rolls_back_when_balance_update_fails(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create_profile(email="an@example.com", name="An")
        session.commit()
        food = CategoryService(session).create(
            CategoryIn(name="Food", type=TransactionType.expense)
        )
        monkeypatch.setattr(services, "apply_delta", _locked_balance)

        result = actions.add_transaction(
            session,
            TransactionIn(
                user_id=user.id,
                category_id=food.id,
                amount=45000,
                type=TransactionType.expense,
            ),
        )

        assert result.success is False
        assert result.error_kind == "StoreError"
        assert session.scalars(select(Transaction)).all() == []
        assert session.get(User, user.id).total_balance == 0


def test_resolve_debt_rolls_back_when_balance_update_fails(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create_profile(email="an@example.com", name="An")
        session.commit()
        CategoryService(session).create(
            CategoryIn(name=DEBT_REPAYMENT, type=TransactionType.income)
        )
        debt = DebtService(session).create(
            DebtIn(user_id=user.id, debtor_name="Alice", amount=100000)
        )
        monkeypatch.setattr(services, "apply_delta", _locked_balance)

        result = actions.resolve_debt(session, debt.id)

        assert result.success is False
        assert result.error_kind == "StoreError"
        stored = session.get(Debt, debt.id)
        assert stored.status == DebtStatus.pending
        assert stored.resolved_at is None
        assert session.scalars(select(Transaction)).all() == []
        assert session.get(User, user.id).total_balance == 0

        monkeypatch.undo()
        retried = actions.resolve_debt(session, debt.id)
        assert retried.success is True
        assert session.get(User, user.id).total_balance == 100000


@pytest.fixture
def quick_add_client(monkeypatch):
    monkeypatch.setenv("HOUSEHOLD_QUICK_ADD_KEYS", "an@example.com:key-an")
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

    with TestingSession() as session:
        UserService(session).create_profile(email="an@example.com", name="An")
        session.commit()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app), TestingSession
    app.dependency_overrides.clear()
    get_settings.cache_clear()


def test_quick_add_rolls_back_when_balance_update_fails(
    quick_add_client, monkeypatch
) -> None:
    http, TestingSession = quick_add_client
    monkeypatch.setattr(services, "apply_delta", _locked_balance)

    response = http.post(
        "/api/quick-add", json={"amount": 50000}, headers={"x-api-key": "key-an"}
    )

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "database is locked" in response.json()["error"]
    with TestingSession() as session:
        assert session.scalars(select(Transaction)).all() == []
        assert session.scalars(select(Category)).all() == []
        user = session.scalar(select(User).where(User.email == "an@example.com"))
        assert user.total_balance == 0
