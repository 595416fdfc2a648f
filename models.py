from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from periods import now_local


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class DebtStatus(str, Enum):
    pending = "pending"
    resolved = "resolved"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class AuthIdentity(Base):
    __tablename__ = "auth_identities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    session_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    user: Mapped[Optional["User"]] = relationship("User", back_populates="identity")


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    auth_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("auth_identities.id"), unique=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    avatar: Mapped[str] = mapped_column(String(16), nullable=False, default="👤")
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    total_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    stashed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # net of admin balance edits; stored balance == ledger + manual_adjustment
    manual_adjustment: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    identity: Mapped[Optional["AuthIdentity"]] = relationship(
        "AuthIdentity", back_populates="user"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="user"
    )
    debts: Mapped[list["Debt"]] = relationship("Debt", back_populates="user")

    __table_args__ = (
        CheckConstraint("stashed_amount >= 0", name="ck_users_stash_non_negative"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[str] = mapped_column(String(16), nullable=False, default="📁")
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    monthly_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("type", "name", name="uq_category_type_name"),
        CheckConstraint("monthly_limit >= 0", name="ck_category_limit_non_negative"),
    )


class UserCategoryLimit(Base, TimestampMixin):
    __tablename__ = "user_category_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    monthly_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "category_id", name="uq_user_category_limit"),
        CheckConstraint(
            "monthly_limit >= 0", name="ck_user_category_limit_non_negative"
        ),
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_local, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_created_at", "created_at"),
        Index("ix_transactions_user_created_at", "user_id", "created_at"),
        Index("ix_transactions_category", "category_id"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )


class Debt(Base):
    __tablename__ = "debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    debtor_name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[DebtStatus] = mapped_column(
        SAEnum(DebtStatus), nullable=False, default=DebtStatus.pending
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=now_local, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="debts")

    __table_args__ = (
        Index("ix_debts_status_created_at", "status", "created_at"),
        CheckConstraint("amount > 0", name="ck_debts_amount_positive"),
    )


class AppSetting(Base):
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
