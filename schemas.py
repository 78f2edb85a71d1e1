from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import BudgetStatus, CategoryType, ConditionType, SourceType, TimePeriod


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.expense


class TransactionIn(BaseModel):
    date: date
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class CategoryLimitIn(BaseModel):
    category_id: int
    limit_amount: Decimal = Field(..., max_digits=12, decimal_places=2)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    start_date: date
    end_date: date
    categories: list[CategoryLimitIn] = Field(default_factory=list)


class BudgetUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class RuleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[int] = None
    condition_type: ConditionType
    threshold: Decimal = Field(..., max_digits=12, decimal_places=2)
    period: TimePeriod
    active: bool = True


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    category_id: Optional[int] = None
    target_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    target_date: date
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class ProgressIn(BaseModel):
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class OrmOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserOut(OrmOut):
    id: int
    name: str


class CategoryOut(OrmOut):
    id: int
    name: str
    type: CategoryType


class TransactionOut(OrmOut):
    id: int
    date: date
    amount: Decimal
    currency: str
    category_id: Optional[int]
    description: Optional[str]
    version: int


class BudgetCategoryOut(OrmOut):
    id: int
    budget_id: int
    category_id: int
    limit_amount: Decimal
    spent_amount: Decimal


class BudgetOut(OrmOut):
    id: int
    name: str
    description: Optional[str]
    start_date: date
    end_date: date
    status: BudgetStatus
    categories: list[BudgetCategoryOut]


class BudgetImpactOut(OrmOut):
    transaction_id: Optional[int]
    impact_amount: Decimal
    affected_budget_categories: list[BudgetCategoryOut]
    would_exceed: list[BudgetCategoryOut]


class RuleOut(OrmOut):
    id: int
    name: str
    category_id: Optional[int]
    condition_type: ConditionType
    threshold: Decimal
    period: TimePeriod
    active: bool


class GoalOut(OrmOut):
    id: int
    name: str
    category_id: Optional[int]
    target_amount: Decimal
    current_amount: Decimal
    target_date: date
    currency: str
    completed: bool


class AlertOut(OrmOut):
    id: int
    source_type: SourceType
    source_id: int
    kind: str
    message: str
    read: bool
    created_at: datetime
