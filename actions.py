"""Data-access contract used by the HTTP layer.

Every function takes a ``Session`` first and returns an ``ActionResult``.
Domain errors and store failures never escape: they are logged, the session
is rolled back and the failure is reported through ``success``/``error``.
"""

import functools
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import balance
from config import get_settings
from errors import FinanceError, StoreError
from models import DebtStatus
from policy import (
    balance_edit_allowed,
    current_viewer,
    require_admin,
    require_user,
)
from schemas import (
    ActionResult,
    BalanceDrift,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    DebtIn,
    DebtOut,
    TransactionFilters,
    TransactionIn,
    TransactionOut,
    UserCategoryLimitIn,
    UserOut,
    UserUpdateIn,
)
from services import (
    CategoryService,
    DebtService,
    MetricsService,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)


def contract_action(func: Callable) -> Callable[..., ActionResult]:
    @functools.wraps(func)
    def wrapper(session: Session, *args, **kwargs) -> ActionResult:
        try:
            data = func(session, *args, **kwargs)
        except FinanceError as exc:
            session.rollback()
            logger.warning(
                f"action_failed: action={func.__name__} kind={exc.kind} error={exc}"
            )
            return ActionResult(success=False, error=str(exc), error_kind=exc.kind)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                f"action_failed: action={func.__name__} kind={StoreError.kind} "
                f"error={exc}"
            )
            return ActionResult(
                success=False, error=str(exc), error_kind=StoreError.kind
            )
        return ActionResult(success=True, data=data)

    return wrapper


def _transactions_out(rows) -> list[TransactionOut]:
    return [TransactionOut.model_validate(row) for row in rows]


@contract_action
def get_users_summary(session: Session):
    return MetricsService(session).users_summary()


@contract_action
def get_users(session: Session):
    return [UserOut.model_validate(u) for u in UserService(session).list_all()]


@contract_action
def update_user(session: Session, token: Optional[str], data: UserUpdateIn):
    viewer = require_user(current_viewer(session, token))
    user = UserService(session).update(
        data, viewer, balance_editable=balance_edit_allowed(session)
    )
    return UserOut.model_validate(user)


@contract_action
def update_stashed_amount(session: Session, token: Optional[str], delta: int):
    viewer = require_user(current_viewer(session, token))
    user = UserService(session).adjust_stash(viewer.id, delta)
    return UserOut.model_validate(user)


@contract_action
def get_recent_transactions(session: Session, limit: int = 10):
    return _transactions_out(TransactionService(session).recent(limit))


@contract_action
def get_all_transactions(session: Session, filters: Optional[TransactionFilters] = None):
    return _transactions_out(TransactionService(session).list(filters))


@contract_action
def get_categories(session: Session):
    return [CategoryOut.model_validate(c) for c in CategoryService(session).list_all()]


@contract_action
def add_category(session: Session, data: CategoryIn):
    category = CategoryService(session).create(data)
    logger.info(f"category_created: id={category.id} type={category.type.value}")
    return CategoryOut.model_validate(category)


@contract_action
def update_category(session: Session, category_id: int, data: CategoryUpdate):
    return CategoryOut.model_validate(CategoryService(session).update(category_id, data))


@contract_action
def delete_category(session: Session, category_id: int):
    CategoryService(session).delete(category_id)
    logger.info(f"category_deleted: id={category_id}")
    return None


@contract_action
def set_user_category_limit(
    session: Session, category_id: int, data: UserCategoryLimitIn
):
    row = CategoryService(session).set_user_limit(
        category_id, data.user_id, data.monthly_limit
    )
    return {
        "user_id": row.user_id,
        "category_id": row.category_id,
        "monthly_limit": row.monthly_limit,
    }


@contract_action
def get_budget_status(session: Session):
    return MetricsService(session).budget_status()


@contract_action
def add_transaction(session: Session, data: TransactionIn):
    service = TransactionService(session)
    txn = service.create(data)
    logger.info(
        f"transaction_created: id={txn.id} user_id={txn.user_id} "
        f"type={txn.type.value} amount={txn.amount}"
    )
    return TransactionOut.model_validate(service.get(txn.id))


@contract_action
def update_transaction_category(session: Session, transaction_id: int, category_id: int):
    txn = TransactionService(session).update_category(transaction_id, category_id)
    return TransactionOut.model_validate(txn)


@contract_action
def get_uncategorized_transactions(session: Session, token: Optional[str]):
    viewer = require_user(current_viewer(session, token))
    return _transactions_out(TransactionService(session).uncategorized(viewer.id))


@contract_action
def get_debts(session: Session, status: Optional[DebtStatus] = None):
    return [DebtOut.model_validate(d) for d in DebtService(session).list(status)]


@contract_action
def add_debt(session: Session, data: DebtIn):
    debt = DebtService(session).create(data)
    logger.info(f"debt_created: id={debt.id} user_id={debt.user_id} amount={debt.amount}")
    return DebtOut.model_validate(debt)


@contract_action
def resolve_debt(session: Session, debt_id: int):
    txn = DebtService(session).resolve(debt_id)
    return TransactionOut.model_validate(TransactionService(session).get(txn.id))


@contract_action
def get_monthly_history(session: Session):
    return MetricsService(session).monthly_history()


@contract_action
def get_category_expense_stats(session: Session):
    return MetricsService(session).category_expense_stats()


@contract_action
def get_monthly_user_comparison(session: Session):
    return MetricsService(session).monthly_user_comparison()


@contract_action
def reconcile_balances(
    session: Session, token: Optional[str], fix: Optional[bool] = None
) -> list[BalanceDrift]:
    require_admin(current_viewer(session, token))
    apply_fix = get_settings().reconcile_fix if fix is None else fix
    drifts = balance.reconcile_balances(session, fix=apply_fix)
    session.commit()
    return drifts
