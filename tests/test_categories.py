import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

import actions
from database import Base
from errors import Conflict, ValidationError
from models import Category, TransactionType, UserCategoryLimit
from schemas import CategoryIn, CategoryUpdate, TransactionIn
from services import CategoryService, TransactionService, UserService


def test_delete_refuses_referenced_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create_profile(email="an@example.com", name="An")
        session.commit()
        categories = CategoryService(session)
        coffee = categories.create(CategoryIn(name="Coffee", type=TransactionType.expense))
        TransactionService(session).create(
            TransactionIn(
                user_id=user.id,
                category_id=coffee.id,
                amount=35000,
                type=TransactionType.expense,
            )
        )

        with pytest.raises(Conflict, match="Cannot delete: 1 transactions"):
            categories.delete(coffee.id)
        assert session.get(Category, coffee.id) is not None

        result = actions.delete_category(session, coffee.id)
        assert result.success is False
        assert result.error_kind == "Conflict"
        assert result.error == "Cannot delete: 1 transactions use this category"
        assert session.get(Category, coffee.id) is not None


def test_delete_unused_category_drops_its_limits() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create_profile(email="an@example.com", name="An")
        session.commit()
        categories = CategoryService(session)
        books = categories.create(
            CategoryIn(name="Books", type=TransactionType.expense, monthly_limit=300000)
        )
        categories.set_user_limit(books.id, user.id, 100000)

        categories.delete(books.id)

        assert session.get(Category, books.id) is None
        assert session.scalars(select(UserCategoryLimit)).all() == []


def test_names_are_unique_per_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session)
        categories.create(CategoryIn(name="Gifts", type=TransactionType.expense))

        with pytest.raises(Conflict):
            categories.create(CategoryIn(name="gifts", type=TransactionType.expense))

        income = categories.create(CategoryIn(name="Gifts", type=TransactionType.income))
        assert income.type == TransactionType.income


def test_income_categories_never_carry_a_limit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create_profile(email="an@example.com", name="An")
        session.commit()
        categories = CategoryService(session)
        salary = categories.create(
            CategoryIn(name="Salary", type=TransactionType.income, monthly_limit=500)
        )
        assert salary.monthly_limit == 0

        updated = categories.update(
            salary.id, CategoryUpdate(name="Wages", monthly_limit=900)
        )
        assert updated.name == "Wages"
        assert updated.monthly_limit == 0

        with pytest.raises(ValidationError):
            categories.set_user_limit(salary.id, user.id, 1000)


def test_recategorize_requires_matching_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = UserService(session).create_profile(email="an@example.com", name="An")
        session.commit()
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        salary = categories.create(CategoryIn(name="Salary", type=TransactionType.income))
        txns = TransactionService(session)
        txn = txns.create(
            TransactionIn(
                user_id=user.id,
                category_id=food.id,
                amount=20000,
                type=TransactionType.expense,
            )
        )

        with pytest.raises(ValidationError, match="type mismatch"):
            txns.update_category(txn.id, salary.id)
        with pytest.raises(ValidationError, match="type mismatch"):
            txns.create(
                TransactionIn(
                    user_id=user.id,
                    category_id=salary.id,
                    amount=20000,
                    type=TransactionType.expense,
                )
            )
