"""Read-side folds over the transaction log.

Everything here is pure: callers query a window from the store and pass the
rows in. Nothing is cached and nothing is written.
"""

from collections import defaultdict
from datetime import date
from typing import Iterable, Optional, Sequence

from models import Category, Transaction, TransactionType, User
from periods import month_key, month_label, short_month_label, trailing_months
from schemas import (
    BudgetStatus,
    CategoryExpenseStat,
    CategoryOut,
    MonthlyComparison,
    MonthlyHistory,
    UserAmount,
    UserBudget,
    UserFinanceSummary,
    UserMonthExpense,
    UserMonthFlow,
    UserOut,
)

FALLBACK_CATEGORY_LABEL = "Other"
FALLBACK_CATEGORY_ICON = "❓"

CATEGORY_COLORS = (
    "#6366f1",
    "#ec4899",
    "#f59e0b",
    "#10b981",
    "#3b82f6",
    "#8b5cf6",
    "#ef4444",
    "#14b8a6",
    "#f97316",
    "#06b6d4",
    "#84cc16",
    "#e879f9",
    "#fb923c",
    "#22d3ee",
    "#a78bfa",
)
USER_COLORS = ("#6366f1", "#ec4899")
COMPARISON_MONTHS = 6

LimitOverrides = dict[tuple[int, int], int]


def saving_rate(total_income: int, total_expense: int) -> int:
    if total_income <= 0:
        return 0
    rate = round((total_income - total_expense) / total_income * 100)
    return max(0, rate)


def budget_percentage(spent: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return round(spent / limit * 100)


def _sum_by_type(
    transactions: Iterable[Transaction], txn_type: TransactionType
) -> int:
    return sum(int(t.amount) for t in transactions if t.type == txn_type)


def category_display(category: Optional[Category]) -> tuple[str, str]:
    if category is None:
        return FALLBACK_CATEGORY_LABEL, FALLBACK_CATEGORY_ICON
    return category.name, category.icon or FALLBACK_CATEGORY_ICON


def user_summaries(
    users: Sequence[User], transactions: Sequence[Transaction]
) -> list[UserFinanceSummary]:
    by_user: dict[int, list[Transaction]] = defaultdict(list)
    for txn in transactions:
        by_user[txn.user_id].append(txn)

    summaries = []
    for user in sorted(users, key=lambda u: u.name):
        own = by_user.get(user.id, [])
        income = _sum_by_type(own, TransactionType.income)
        expense = _sum_by_type(own, TransactionType.expense)
        balance = int(user.total_balance)
        stashed = int(user.stashed_amount or 0)
        summaries.append(
            UserFinanceSummary(
                user=UserOut.model_validate(user),
                total_income=income,
                total_expense=expense,
                balance=balance,
                stashed=stashed,
                spendable=balance - stashed,
                saving_rate=saving_rate(income, expense),
            )
        )
    return summaries


def budget_status(
    categories: Sequence[Category],
    transactions: Sequence[Transaction],
    users: Sequence[User] = (),
    overrides: Optional[LimitOverrides] = None,
) -> list[BudgetStatus]:
    overrides = overrides or {}
    spent_by_category: dict[int, int] = defaultdict(int)
    spent_by_user: dict[tuple[int, int], int] = defaultdict(int)
    for txn in transactions:
        if txn.type != TransactionType.expense or txn.category_id is None:
            continue
        spent_by_category[txn.category_id] += int(txn.amount)
        spent_by_user[(txn.user_id, txn.category_id)] += int(txn.amount)

    statuses = []
    for category in categories:
        if category.type != TransactionType.expense:
            continue
        spent = spent_by_category.get(category.id, 0)
        limit = int(category.monthly_limit or 0)
        per_user = []
        for user in sorted(users, key=lambda u: u.name):
            key = (user.id, category.id)
            user_limit = overrides.get(key, limit)
            user_spent = spent_by_user.get(key, 0)
            per_user.append(
                UserBudget(
                    user_id=user.id,
                    user_name=user.name,
                    spent=user_spent,
                    limit=user_limit,
                    percentage=budget_percentage(user_spent, user_limit),
                    has_override=key in overrides,
                )
            )
        statuses.append(
            BudgetStatus(
                category=CategoryOut.model_validate(category),
                spent=spent,
                limit=limit,
                percentage=budget_percentage(spent, limit),
                per_user=per_user,
            )
        )
    return statuses


def monthly_history(
    users: Sequence[User], transactions: Sequence[Transaction]
) -> list[MonthlyHistory]:
    """Income/expense per calendar month and user, oldest month first."""
    if not transactions:
        return []
    flows: dict[str, dict[TransactionType, dict[int, int]]] = {}
    for txn in transactions:
        key = month_key(txn.created_at)
        month = flows.setdefault(
            key,
            {TransactionType.income: defaultdict(int), TransactionType.expense: defaultdict(int)},
        )
        month[txn.type][txn.user_id] += int(txn.amount)

    ordered_users = sorted(users, key=lambda u: u.name)
    history = []
    for key in sorted(flows):
        income = flows[key][TransactionType.income]
        expense = flows[key][TransactionType.expense]
        per_user = [
            UserMonthFlow(
                user_id=u.id,
                user_name=u.name,
                income=income.get(u.id, 0),
                expense=expense.get(u.id, 0),
                net=income.get(u.id, 0) - expense.get(u.id, 0),
            )
            for u in ordered_users
        ]
        total_income = sum(p.income for p in per_user)
        total_expense = sum(p.expense for p in per_user)
        history.append(
            MonthlyHistory(
                month=key,
                label=month_label(key),
                total_income=total_income,
                total_expense=total_expense,
                net_change=total_income - total_expense,
                per_user=per_user,
            )
        )
    return history


def category_expense_stats(
    transactions: Sequence[Transaction], users: Sequence[User] = ()
) -> list[CategoryExpenseStat]:
    totals: dict[Optional[int], int] = defaultdict(int)
    per_user: dict[Optional[int], dict[int, int]] = defaultdict(lambda: defaultdict(int))
    display: dict[Optional[int], tuple[str, str]] = {}
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        # a dangling category_id folds into the fallback bucket
        category = txn.category
        key = category.id if category is not None else None
        totals[key] += int(txn.amount)
        per_user[key][txn.user_id] += int(txn.amount)
        display.setdefault(key, category_display(category))

    names = {u.id: u.name for u in users}
    ranked = sorted(totals, key=lambda k: (-totals[k], display[k][0]))
    stats = []
    for index, key in enumerate(ranked):
        name, icon = display[key]
        split = per_user[key]
        user_ids = [u.id for u in sorted(users, key=lambda u: u.name)]
        user_ids += sorted(uid for uid in split if uid not in names)
        stats.append(
            CategoryExpenseStat(
                category_id=key,
                category=name,
                icon=icon,
                amount=totals[key],
                color=CATEGORY_COLORS[index % len(CATEGORY_COLORS)],
                per_user=[
                    UserAmount(
                        user_id=uid,
                        user_name=names.get(uid, ""),
                        amount=split.get(uid, 0),
                    )
                    for uid in user_ids
                ],
            )
        )
    return stats


def monthly_user_comparison(
    users: Sequence[User],
    transactions: Sequence[Transaction],
    today: date,
    months: int = COMPARISON_MONTHS,
) -> list[MonthlyComparison]:
    expense: dict[tuple[str, int], int] = defaultdict(int)
    for txn in transactions:
        if txn.type != TransactionType.expense:
            continue
        expense[(month_key(txn.created_at), txn.user_id)] += int(txn.amount)

    ordered_users = sorted(users, key=lambda u: u.name)
    buckets = []
    for period in trailing_months(months, today):
        key = month_key(period.start)
        buckets.append(
            MonthlyComparison(
                month=key,
                label=short_month_label(key),
                users=[
                    UserMonthExpense(
                        user_id=u.id,
                        user_name=u.name,
                        expense=expense.get((key, u.id), 0),
                        color=USER_COLORS[idx % len(USER_COLORS)],
                    )
                    for idx, u in enumerate(ordered_users)
                ],
            )
        )
    return buckets
