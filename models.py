import math
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
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


DEFAULT_CATEGORY_ICON = "category"
DEFAULT_CATEGORY_COLOR = "#2196F3"


def percent_of(part: float, whole: float) -> int:
    """Whole-number percentage, halves rounded up; 0 when ``whole`` is not positive."""
    if whole <= 0:
        return 0
    return math.floor(part / whole * 100 + 0.5)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str] = mapped_column(String(40), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024))
    avatar_key: Mapped[Optional[str]] = mapped_column(String(512))


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, unique=True
    )
    total_budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    categories: Mapped[list["CategoryBudget"]] = relationship(
        "CategoryBudget",
        back_populates="budget",
        cascade="all, delete-orphan",
        order_by="CategoryBudget.position",
    )

    __table_args__ = (
        CheckConstraint("total_budget_cents >= 0", name="ck_budget_total_positive"),
        CheckConstraint("total_spent_cents >= 0", name="ck_budget_spent_positive"),
    )

    @property
    def budget_left_cents(self) -> int:
        return self.total_budget_cents - self.total_spent_cents

    @property
    def budget_used_percentage(self) -> int:
        return percent_of(self.total_spent_cents, self.total_budget_cents)


class CategoryBudget(Base):
    __tablename__ = "category_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    budget_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    icon: Mapped[str] = mapped_column(
        String(60), nullable=False, default=DEFAULT_CATEGORY_ICON
    )
    color: Mapped[str] = mapped_column(
        String(7), nullable=False, default=DEFAULT_CATEGORY_COLOR
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="categories")

    __table_args__ = (
        UniqueConstraint("budget_id", "category", name="uq_category_budget_category"),
        CheckConstraint(
            "budget_amount_cents >= 0", name="ck_category_budget_amount_positive"
        ),
        CheckConstraint(
            "spent_amount_cents >= 0", name="ck_category_spent_amount_positive"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False, default=TransactionType.expense
    )
    date: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category", "user_id", "category"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class OTP(Base, TimestampMixin):
    __tablename__ = "otps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_otps_expires_at", "expires_at"),
        Index("ix_otps_user_code", "user_id", "code"),
    )
