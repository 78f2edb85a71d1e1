from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


MONEY = Numeric(12, 2)
ZERO = Decimal("0.00")


class CategoryType(str, Enum):
    expense = "EXPENSE"
    income = "INCOME"
    transfer = "TRANSFER"


class BudgetStatus(str, Enum):
    upcoming = "UPCOMING"
    active = "ACTIVE"
    completed = "COMPLETED"


class ConditionType(str, Enum):
    greater_than = "GREATER_THAN"
    less_than = "LESS_THAN"
    equal_to = "EQUAL_TO"


class TimePeriod(str, Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    yearly = "YEARLY"


class SourceType(str, Enum):
    budget = "BUDGET"
    rule = "RULE"
    goal = "GOAL"


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


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
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(
        _enum(CategoryType, "categorytype"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    description: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        # ids feed AppliedDelta keys and must never be reused
        {"sqlite_autoincrement": True},
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BudgetStatus] = mapped_column(
        _enum(BudgetStatus, "budgetstatus"),
        nullable=False,
        default=BudgetStatus.active,
    )

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="budget",
        cascade="all, delete-orphan",
        order_by="BudgetCategory.id",
    )

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_budget_dates_ordered"),
        Index("ix_budgets_user_status", "user_id", "status"),
    )

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    limit_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    spent_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=ZERO)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="categories")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("budget_id", "category_id", name="uq_budget_category"),
        CheckConstraint("spent_amount >= 0", name="ck_budget_category_spent_nonneg"),
        CheckConstraint("limit_amount > 0", name="ck_budget_category_limit_positive"),
    )


class Rule(Base, TimestampMixin):
    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    condition_type: Mapped[ConditionType] = mapped_column(
        _enum(ConditionType, "conditiontype"), nullable=False
    )
    threshold: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    period: Mapped[TimePeriod] = mapped_column(
        _enum(TimePeriod, "timeperiod"), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (Index("ix_rules_user_active", "user_id", "active"),)


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    target_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    current_amount: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=ZERO
    )
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")

    def apply_contribution(self, amount: Decimal) -> bool:
        """Add ``amount`` to progress; True only when this call completes the goal."""
        self.current_amount = (self.current_amount or ZERO) + amount
        if not self.completed and self.current_amount >= self.target_amount:
            self.completed = True
            return True
        return False

    def reset_progress(self) -> None:
        self.current_amount = ZERO
        self.completed = False


class Alert(Base, TimestampMixin):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    source_type: Mapped[SourceType] = mapped_column(
        _enum(SourceType, "sourcetype"), nullable=False
    )
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_alerts_source_unread", "source_type", "source_id", "kind", "read"),
        Index("ix_alerts_user_read", "user_id", "read"),
    )


class AppliedDelta(Base, TimestampMixin):
    __tablename__ = "applied_deltas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(Integer)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
