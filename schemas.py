import datetime as dt
from datetime import date
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import MAX_AMOUNT_CENTS, AccountType, CategoryType, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.checking
    balance_cents: int = Field(default=0, ge=-MAX_AMOUNT_CENTS, le=MAX_AMOUNT_CENTS)
    institution: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, max_length=50)


class AccountUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    institution: Optional[str] = Field(default=None, max_length=100)
    account_number: Optional[str] = Field(default=None, max_length=50)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    institution: Optional[str]
    account_number: Optional[str]


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.expense
    description: Optional[str] = None
    is_default: bool = False


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    description: Optional[str]
    is_default: bool


class BudgetIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., ge=0, le=MAX_AMOUNT_CENTS)
    start_date: date
    end_date: date
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_period(self) -> "BudgetIn":
        if self.start_date > self.end_date:
            raise ValueError("Start date must be before end date")
        return self


class BudgetUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_AMOUNT_CENTS)
    description: Optional[str] = None


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    amount_cents: int
    spent_cents: int
    start_date: date
    end_date: date
    is_auto_created: bool
    description: Optional[str]


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., ge=0, le=MAX_AMOUNT_CENTS)
    description: str = Field(..., min_length=1, max_length=200)
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    # Category name; resolved by find-or-create when no category_id is given.
    category: Optional[str] = Field(default=None, max_length=100)
    vendor: Optional[str] = Field(default=None, max_length=200)
    purchaser: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    type: TransactionType
    amount_cents: int
    description: str
    account_id: Optional[int]
    category_id: Optional[int]
    vendor: Optional[str]
    purchaser: Optional[str]
    note: Optional[str]


class TransactionWriteOut(BaseModel):
    transaction: TransactionOut
    warnings: list[str] = Field(default_factory=list)


class ImportRow(BaseModel):
    """One normalized import row; amount is validated per row by the importer."""

    model_config = ConfigDict(extra="ignore")

    date: Optional[dt.date] = None
    amount: Union[int, float, str, None] = None
    description: Optional[str] = Field(default=None, max_length=200)
    vendor: Optional[str] = Field(default=None, max_length=200)
    purchaser: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    account_id: Optional[int] = None


class ImportResultOut(BaseModel):
    imported: int
    transactions: list[TransactionOut]
    warnings: list[str] = Field(default_factory=list)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount_cents: int = Field(..., ge=0, le=MAX_AMOUNT_CENTS)
    current_amount_cents: int = Field(default=0, ge=0, le=MAX_AMOUNT_CENTS)
    target_date: date
    category: Optional[str] = Field(default=None, max_length=100)


class GoalUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_AMOUNT_CENTS)
    target_date: Optional[date] = None
    category: Optional[str] = Field(default=None, max_length=100)


class ContributionIn(BaseModel):
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    target_amount_cents: int
    current_amount_cents: int
    target_date: date
    category: Optional[str]
