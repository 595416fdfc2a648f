import datetime as dt
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from models import DebtStatus, TransactionType

T = TypeVar("T")


class ActionResult(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    auth_id: Optional[int]
    name: str
    email: str
    avatar: str
    avatar_url: Optional[str]
    total_balance: int
    stashed_amount: int
    is_admin: bool
    created_at: datetime
    updated_at: datetime


class UserRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    avatar: str
    avatar_url: Optional[str] = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    icon: str
    type: TransactionType
    monthly_limit: int
    created_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    category_id: Optional[int]
    amount: int
    type: TransactionType
    note: str
    created_at: datetime
    category: Optional[CategoryOut] = None
    user: Optional[UserRef] = None


class DebtOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    debtor_name: str
    amount: int
    note: str
    status: DebtStatus
    resolved_at: Optional[datetime]
    created_at: datetime
    user: Optional[UserRef] = None


class AppSettingsOut(BaseModel):
    registration_enabled: bool = True
    allow_balance_edit: bool = True
    stash_name: str = "Stash"


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = Field(default="📁", min_length=1, max_length=16)
    type: TransactionType
    monthly_limit: int = Field(default=0, ge=0)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, min_length=1, max_length=16)
    monthly_limit: Optional[int] = Field(default=None, ge=0)


class UserCategoryLimitIn(BaseModel):
    user_id: int
    monthly_limit: int = Field(..., ge=0)


class TransactionIn(BaseModel):
    user_id: int
    category_id: int
    amount: int = Field(..., gt=0)
    type: TransactionType
    note: str = Field(default="", max_length=500)
    created_at: Optional[datetime] = None


class TransactionCategoryUpdate(BaseModel):
    category_id: int


class TransactionFilters(BaseModel):
    user_id: Optional[int] = None
    type: Optional[TransactionType] = None
    date_from: Optional[dt.date] = None
    date_to: Optional[dt.date] = None


class DebtIn(BaseModel):
    user_id: int
    debtor_name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., gt=0)
    note: str = Field(default="", max_length=500)


class UserEditIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    total_balance: int


class UserUpdateIn(UserEditIn):
    id: int


class ProfileUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    avatar_url: Optional[str] = Field(default=None, max_length=500)


class StashUpdateIn(BaseModel):
    delta: int


class QuickAddIn(BaseModel):
    """Raw quick-add body; fields are validated by ``QuickAddService``."""

    model_config = ConfigDict(extra="ignore")

    amount: Any = None
    type: Any = None
    note: Any = None


class QuickAddOut(BaseModel):
    success: bool = True
    message: str


class SignUpIn(BaseModel):
    email: str
    password: str
    name: str = Field(..., min_length=1, max_length=100)


class SignInIn(BaseModel):
    email: str
    password: str


class MagicLinkIn(BaseModel):
    email: str
    site_url: str


class MagicLinkCompleteIn(BaseModel):
    token: str


class SessionOut(BaseModel):
    token: str
    user: Optional[UserOut] = None


class PasswordChangeIn(BaseModel):
    new_password: str


class ToggleIn(BaseModel):
    enabled: bool


class StashNameIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=40)


class UserFinanceSummary(BaseModel):
    user: UserOut
    total_income: int
    total_expense: int
    balance: int
    stashed: int
    spendable: int
    saving_rate: int


class UserBudget(BaseModel):
    user_id: int
    user_name: str
    spent: int
    limit: int
    percentage: int
    has_override: bool


class BudgetStatus(BaseModel):
    category: CategoryOut
    spent: int
    limit: int
    percentage: int
    per_user: list[UserBudget] = Field(default_factory=list)


class UserMonthFlow(BaseModel):
    user_id: int
    user_name: str
    income: int
    expense: int
    net: int


class MonthlyHistory(BaseModel):
    month: str
    label: str
    total_income: int
    total_expense: int
    net_change: int
    per_user: list[UserMonthFlow]


class UserAmount(BaseModel):
    user_id: int
    user_name: str
    amount: int


class CategoryExpenseStat(BaseModel):
    category_id: Optional[int]
    category: str
    icon: str
    amount: int
    color: str
    per_user: list[UserAmount]


class UserMonthExpense(BaseModel):
    user_id: int
    user_name: str
    expense: int
    color: str


class MonthlyComparison(BaseModel):
    month: str
    label: str
    users: list[UserMonthExpense]


class BalanceDrift(BaseModel):
    user_id: int
    user_name: str
    stored: int
    expected: int
    drift: int
    fixed: bool
