from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from amounts import cents_to_decimal, parse_amount
from models import CategoryType


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


def _normalize_amount(value: object) -> Decimal:
    if value is None:
        raise ValueError("Amount is required")
    return cents_to_decimal(parse_amount(value))  # type: ignore[arg-type]


class BudgetYearIn(ApiModel):
    year: int = Field(..., ge=1900, le=3000)
    regulation_number: Optional[str] = Field(default=None, max_length=100)
    enacted_on: Optional[date] = None


class BudgetYearUpdate(ApiModel):
    year: Optional[int] = Field(default=None, ge=1900, le=3000)
    regulation_number: Optional[str] = Field(default=None, max_length=100)
    enacted_on: Optional[date] = None


class CategoryIn(ApiModel):
    parent_id: Optional[int] = None
    type: CategoryType
    name: str = Field(..., min_length=1, max_length=200)
    code: Optional[str] = Field(default=None, max_length=50)
    level: int = Field(default=1, ge=1, le=3)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Category name is required")
        return value

    @field_validator("code")
    @classmethod
    def strip_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class CategoryUpdate(ApiModel):
    parent_id: Optional[int] = None
    type: Optional[CategoryType] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    code: Optional[str] = Field(default=None, max_length=50)
    level: Optional[int] = Field(default=None, ge=1, le=3)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("Category name is required")
        return value

    @field_validator("code")
    @classmethod
    def strip_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class TransactionIn(ApiModel):
    year_id: int = Field(..., gt=0)
    category_id: int = Field(..., gt=0)
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: object) -> Decimal:
        return _normalize_amount(value)

    @property
    def amount_cents(self) -> int:
        return int(self.amount * 100)


class TransactionUpdate(ApiModel):
    year_id: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[int] = Field(default=None, gt=0)
    amount: Optional[Decimal] = None

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: object) -> Optional[Decimal]:
        if value is None:
            return None
        return _normalize_amount(value)

    @property
    def amount_cents(self) -> Optional[int]:
        if self.amount is None:
            return None
        return int(self.amount * 100)


class BulkTransactionsIn(ApiModel):
    transactions: list[TransactionIn] = Field(..., min_length=1)


class FiscalYearTransactionIn(ApiModel):
    year: int = Field(..., ge=1900, le=3000)
    category_id: int = Field(..., gt=0)
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value: object) -> Decimal:
        return _normalize_amount(value)


class LoginIn(ApiModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=200)
