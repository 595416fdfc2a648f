from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

import aggregation
from balance import apply_delta, apply_stash_delta, set_balance, signed_amount
from config import Settings, get_settings
from errors import (
    Conflict,
    Misconfigured,
    NotFound,
    PreconditionFailed,
    Unauthenticated,
    Unauthorized,
    ValidationError,
)
from models import (
    AppSetting,
    Category,
    Debt,
    DebtStatus,
    Transaction,
    TransactionType,
    User,
    UserCategoryLimit,
)
from periods import current_month, now_local, resolve_range, trailing_months
from schemas import (
    AppSettingsOut,
    BudgetStatus,
    CategoryExpenseStat,
    CategoryIn,
    CategoryUpdate,
    DebtIn,
    MonthlyComparison,
    MonthlyHistory,
    QuickAddIn,
    TransactionFilters,
    TransactionIn,
    UserFinanceSummary,
    UserUpdateIn,
)


logger = logging.getLogger(__name__)

UNCATEGORIZED_EXPENSE = "Uncategorized"
OTHER_INCOME = "Other income"
DEBT_REPAYMENT = "Debt Repayment"

SINK_CATEGORIES: dict[TransactionType, tuple[str, str]] = {
    TransactionType.expense: (UNCATEGORIZED_EXPENSE, "❓"),
    TransactionType.income: (OTHER_INCOME, "💵"),
}

REGISTRATION_ENABLED = "registration_enabled"
ALLOW_BALANCE_EDIT = "allow_balance_edit"
STASH_NAME = "stash_name"


def _as_bool(value: str) -> bool:
    return value.strip().lower() == "true"


class SettingsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self) -> AppSettingsOut:
        settings = AppSettingsOut()
        for row in self.session.scalars(select(AppSetting)).all():
            if row.key == REGISTRATION_ENABLED:
                settings.registration_enabled = _as_bool(row.value)
            elif row.key == ALLOW_BALANCE_EDIT:
                settings.allow_balance_edit = _as_bool(row.value)
            elif row.key == STASH_NAME and row.value.strip():
                settings.stash_name = row.value.strip()
        return settings

    def is_enabled(self, key: str) -> bool:
        row = self.session.get(AppSetting, key)
        if row is None:
            return True
        return _as_bool(row.value)

    def set_value(self, key: str, value: str) -> None:
        row = self.session.get(AppSetting, key)
        if row is None:
            self.session.add(AppSetting(key=key, value=value))
        else:
            row.value = value
        self.session.commit()
        logger.info(f"app_setting: key={key} value={value}")

    def set_flag(self, key: str, enabled: bool) -> None:
        self.set_value(key, "true" if enabled else "false")


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.name)).all()

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def get_by_auth_id(self, auth_id: int) -> Optional[User]:
        return self.session.scalar(select(User).where(User.auth_id == auth_id))

    def create_profile(
        self, *, email: str, name: str, auth_id: Optional[int] = None
    ) -> User:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Name cannot be empty")
        if self.get_by_email(email):
            raise Conflict("Email already registered")
        user = User(
            auth_id=auth_id,
            email=email.strip().lower(),
            name=clean_name,
            avatar="👤",
            avatar_url=None,
            total_balance=0,
            stashed_amount=0,
            manual_adjustment=0,
            is_admin=False,
        )
        self.session.add(user)
        self.session.flush()
        return user

    def update(
        self, data: UserUpdateIn, viewer: User, *, balance_editable: bool = True
    ) -> User:
        user = self.get(data.id)
        if viewer.id != user.id and not viewer.is_admin:
            raise Unauthorized("You can only edit your own account")
        user.name = data.name.strip()
        if data.total_balance != user.total_balance:
            if not balance_editable:
                raise Unauthorized("Balance editing is disabled")
            self.session.flush()
            set_balance(self.session, user.id, data.total_balance)
        self.session.commit()
        self.session.refresh(user)
        return user

    def update_profile(
        self,
        user: User,
        *,
        name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        clear_avatar: bool = False,
    ) -> User:
        if name is not None:
            clean_name = name.strip()
            if not clean_name:
                raise ValidationError("Name cannot be empty")
            user.name = clean_name
        if avatar_url is not None or clear_avatar:
            user.avatar_url = avatar_url or None
        self.session.commit()
        self.session.refresh(user)
        return user

    def adjust_stash(self, user_id: int, delta: int) -> User:
        apply_stash_delta(self.session, user_id, delta)
        self.session.commit()
        return self.get(user_id)


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        return category

    def find(self, name: str, txn_type: TransactionType) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(Category.name == name, Category.type == txn_type)
        )

    def _check_unique(
        self, name: str, txn_type: TransactionType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.type == txn_type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise Conflict("Category with this name already exists")

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        self._check_unique(name, data.type)
        category = Category(
            name=name,
            icon=data.icon,
            type=data.type,
            monthly_limit=(
                data.monthly_limit if data.type == TransactionType.expense else 0
            ),
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValidationError("Category name cannot be empty")
            self._check_unique(name, category.type, exclude_id=category.id)
            category.name = name
        if data.icon is not None:
            category.icon = data.icon
        if data.monthly_limit is not None and category.type == TransactionType.expense:
            category.monthly_limit = data.monthly_limit
        self.session.commit()
        self.session.refresh(category)
        return category

    def usage_count(self, category_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.category_id == category_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        count = self.usage_count(category.id)
        if count > 0:
            raise Conflict(f"Cannot delete: {count} transactions use this category")
        for limit in self.session.scalars(
            select(UserCategoryLimit).where(UserCategoryLimit.category_id == category.id)
        ).all():
            self.session.delete(limit)
        self.session.delete(category)
        self.session.commit()

    def ensure_sink(self, txn_type: TransactionType) -> Category:
        """Return the catch-all category for ``txn_type``, creating it on demand."""
        name, icon = SINK_CATEGORIES[txn_type]
        existing = self.find(name, txn_type)
        if existing:
            return existing
        category = Category(name=name, icon=icon, type=txn_type, monthly_limit=0)
        self.session.add(category)
        self.session.flush()
        logger.info(f"sink_category_created: type={txn_type.value} id={category.id}")
        return category

    def set_user_limit(
        self, category_id: int, user_id: int, monthly_limit: int
    ) -> UserCategoryLimit:
        category = self.get(category_id)
        if category.type != TransactionType.expense:
            raise ValidationError("Only expense categories have budgets")
        if monthly_limit < 0:
            raise ValidationError("Limit cannot be negative")
        UserService(self.session).get(user_id)
        row = self.session.scalar(
            select(UserCategoryLimit).where(
                UserCategoryLimit.user_id == user_id,
                UserCategoryLimit.category_id == category_id,
            )
        )
        if row is None:
            row = UserCategoryLimit(
                user_id=user_id, category_id=category_id, monthly_limit=monthly_limit
            )
            self.session.add(row)
        else:
            row.monthly_limit = monthly_limit
        self.session.commit()
        self.session.refresh(row)
        return row

    def limit_overrides(self) -> aggregation.LimitOverrides:
        rows = self.session.scalars(select(UserCategoryLimit)).all()
        return {(r.user_id, r.category_id): int(r.monthly_limit) for r in rows}


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _with_relations(self):
        return select(Transaction).options(
            joinedload(Transaction.category), joinedload(Transaction.user)
        )

    def create(self, data: TransactionIn) -> Transaction:
        UserService(self.session).get(data.user_id)
        category = CategoryService(self.session).get(data.category_id)
        if category.type != data.type:
            raise ValidationError("Category type mismatch")
        return self._insert(
            user_id=data.user_id,
            category_id=category.id,
            amount=data.amount,
            txn_type=data.type,
            note=data.note,
            created_at=data.created_at,
        )

    def _insert(
        self,
        *,
        user_id: int,
        category_id: int,
        amount: int,
        txn_type: TransactionType,
        note: str = "",
        created_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> Transaction:
        if amount <= 0:
            raise ValidationError("Amount must be a positive number")
        txn = Transaction(
            user_id=user_id,
            category_id=category_id,
            amount=amount,
            type=txn_type,
            note=note or "",
            created_at=created_at or now_local(),
        )
        self.session.add(txn)
        self.session.flush()
        apply_delta(self.session, user_id, signed_amount(txn_type, amount))
        if commit:
            self.session.commit()
            self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            self._with_relations().where(Transaction.id == transaction_id)
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def update_category(self, transaction_id: int, category_id: int) -> Transaction:
        txn = self.get(transaction_id)
        category = CategoryService(self.session).get(category_id)
        if category.type != txn.type:
            raise ValidationError("Category type mismatch")
        txn.category_id = category.id
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def recent(self, limit: int = 10) -> list[Transaction]:
        limit = max(1, min(limit, 200))
        stmt = (
            self._with_relations()
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        start, end = resolve_range(filters.date_from, filters.date_to)
        stmt = self._with_relations().order_by(
            Transaction.created_at.desc(), Transaction.id.desc()
        )
        if filters.user_id is not None:
            stmt = stmt.where(Transaction.user_id == filters.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if start is not None:
            stmt = stmt.where(Transaction.created_at >= start)
        if end is not None:
            stmt = stmt.where(Transaction.created_at <= end)
        return self.session.scalars(stmt).all()

    def uncategorized(self, user_id: int) -> list[Transaction]:
        sink = CategoryService(self.session).find(
            UNCATEGORIZED_EXPENSE, TransactionType.expense
        )
        if sink is None:
            return []
        stmt = (
            self._with_relations()
            .where(Transaction.category_id == sink.id, Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()


class DebtService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self, status: Optional[DebtStatus] = None) -> list[Debt]:
        stmt = (
            select(Debt)
            .options(joinedload(Debt.user))
            .order_by(Debt.created_at.desc(), Debt.id.desc())
        )
        if status is not None:
            stmt = stmt.where(Debt.status == status)
        return self.session.scalars(stmt).all()

    def get(self, debt_id: int) -> Debt:
        debt = self.session.get(Debt, debt_id)
        if not debt:
            raise NotFound("Debt not found")
        return debt

    def create(self, data: DebtIn) -> Debt:
        UserService(self.session).get(data.user_id)
        debtor = data.debtor_name.strip()
        if not debtor:
            raise ValidationError("Debtor name cannot be empty")
        debt = Debt(
            user_id=data.user_id,
            debtor_name=debtor,
            amount=data.amount,
            note=data.note or "",
            status=DebtStatus.pending,
            created_at=now_local(),
        )
        self.session.add(debt)
        self.session.commit()
        self.session.refresh(debt)
        return debt

    def resolve(self, debt_id: int, now: Optional[datetime] = None) -> Transaction:
        """Mark a pending debt resolved and credit the lender.

        The status flip, the repayment income and the balance increment
        commit together. The flip is conditional on ``pending`` so two
        concurrent resolvers cannot both credit the lender.
        """
        debt = self.get(debt_id)
        if debt.status != DebtStatus.pending:
            raise Conflict("Debt already resolved")

        categories = CategoryService(self.session)
        repayment = categories.find(DEBT_REPAYMENT, TransactionType.income)
        if repayment is None:
            raise PreconditionFailed(
                f'Debt Repayment category not found. Please create an income '
                f'category called "{DEBT_REPAYMENT}".'
            )

        resolved_at = now or now_local()
        flipped = self.session.execute(
            update(Debt)
            .where(Debt.id == debt.id, Debt.status == DebtStatus.pending)
            .values(status=DebtStatus.resolved, resolved_at=resolved_at)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount == 0:
            raise Conflict("Debt already resolved")

        txn = TransactionService(self.session)._insert(
            user_id=debt.user_id,
            category_id=repayment.id,
            amount=int(debt.amount),
            txn_type=TransactionType.income,
            note=f"Debt repaid by {debt.debtor_name}",
            created_at=resolved_at,
            commit=False,
        )
        self.session.commit()
        self.session.refresh(debt)
        self.session.refresh(txn)
        logger.info(
            f"debt_resolved: debt_id={debt.id} user_id={debt.user_id} "
            f"amount={debt.amount} transaction_id={txn.id}"
        )
        return txn


_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_whole_amount(value: Any) -> Optional[int]:
    """Leading-integer parse: ``"50000đ"`` -> 50000, ``12.9`` -> 12."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return int(value)
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        return int(match.group(1)) if match else None
    return None


def _is_missing(value: Any) -> bool:
    if value is None or value is False or value == "":
        return True
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0


class QuickAddService:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def resolve_email(self, api_key: Optional[str]) -> str:
        if not api_key:
            raise Unauthenticated("Missing x-api-key header")
        keys = self.settings.quick_add_keys
        if not keys:
            raise Misconfigured("QUICK_ADD_KEYS not configured on server")
        email = keys.get(api_key)
        if not email:
            raise Unauthenticated("Invalid API key")
        return email

    @staticmethod
    def validate(data: QuickAddIn) -> tuple[int, TransactionType]:
        if _is_missing(data.amount):
            raise ValidationError("Missing required field: amount")
        raw_type = data.type or "expense"
        if raw_type not in ("income", "expense"):
            raise ValidationError('Type must be "income" or "expense"')
        amount = parse_whole_amount(data.amount)
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be a positive number")
        return amount, TransactionType(raw_type)

    def ingest(self, api_key: Optional[str], data: QuickAddIn) -> tuple[User, Transaction]:
        email = self.resolve_email(api_key)
        amount, txn_type = self.validate(data)

        user = UserService(self.session).get_by_email(email)
        if not user:
            raise NotFound(f"User not found for email: {email}")

        sink = CategoryService(self.session).ensure_sink(txn_type)
        txn = TransactionService(self.session)._insert(
            user_id=user.id,
            category_id=sink.id,
            amount=amount,
            txn_type=txn_type,
            note=str(data.note).strip() if data.note is not None else "",
        )
        logger.info(
            f"quick_add: user_id={user.id} type={txn_type.value} amount={amount}"
        )
        return user, txn

    @staticmethod
    def message(user: User, txn: Transaction) -> str:
        sign = "+" if txn.type == TransactionType.income else "-"
        msg = f"✅ {user.name}: {sign}{txn.amount:,}₫"
        if txn.note:
            msg += f" ({txn.note})"
        return msg


class MetricsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _transactions_between(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        txn_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        )
        if start is not None:
            stmt = stmt.where(Transaction.created_at >= start)
        if end is not None:
            stmt = stmt.where(Transaction.created_at <= end)
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        return self.session.scalars(stmt).all()

    def _users(self) -> list[User]:
        return UserService(self.session).list_all()

    def users_summary(self, now: Optional[datetime] = None) -> list[UserFinanceSummary]:
        users = self._users()
        if not users:
            return []
        start, end = current_month((now or now_local()).date()).bounds()
        return aggregation.user_summaries(users, self._transactions_between(start, end))

    def budget_status(self, now: Optional[datetime] = None) -> list[BudgetStatus]:
        categories_service = CategoryService(self.session)
        categories = [
            c
            for c in categories_service.list_all()
            if c.type == TransactionType.expense
        ]
        start, end = current_month((now or now_local()).date()).bounds()
        transactions = self._transactions_between(
            start, end, TransactionType.expense
        )
        return aggregation.budget_status(
            categories,
            transactions,
            self._users(),
            categories_service.limit_overrides(),
        )

    def monthly_history(self) -> list[MonthlyHistory]:
        return aggregation.monthly_history(
            self._users(), self._transactions_between(None, None)
        )

    def category_expense_stats(
        self, now: Optional[datetime] = None
    ) -> list[CategoryExpenseStat]:
        start, end = current_month((now or now_local()).date()).bounds()
        transactions = self._transactions_between(start, end, TransactionType.expense)
        return aggregation.category_expense_stats(transactions, self._users())

    def monthly_user_comparison(
        self, now: Optional[datetime] = None
    ) -> list[MonthlyComparison]:
        today = (now or now_local()).date()
        months = trailing_months(aggregation.COMPARISON_MONTHS, today)
        start = months[0].bounds()[0]
        end = months[-1].bounds()[1]
        transactions = self._transactions_between(start, end, TransactionType.expense)
        return aggregation.monthly_user_comparison(self._users(), transactions, today)
