from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from models import (
    BudgetStatus,
    BudgetType,
    CategoryType,
    CurrencyCode,
    RecurrenceFrequency,
    TransactionStatus,
    TransactionType,
)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _coerce_enum(enum_cls: type[Enum], value: Any, message: str) -> Any:
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValueError(message) from exc


def _coerce_amount(value: Any, message: str) -> Any:
    if value is None or isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(message)
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(message) from exc


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: CategoryType
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> Any:
        return _coerce_enum(
            CategoryType, value, "Type must be either 'income' or 'expense'"
        )


class CategoryPatch(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    type: Optional[CategoryType] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> Any:
        return _coerce_enum(
            CategoryType, value, "Type must be either 'income' or 'expense'"
        )


class RecurringPatternIn(BaseModel):
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    end_date: datetime

    @field_validator("frequency", mode="before")
    @classmethod
    def _frequency(cls, value: Any) -> Any:
        return _coerce_enum(RecurrenceFrequency, value, "Invalid recurring frequency")

    @field_validator("end_date")
    @classmethod
    def _end_date(cls, value: datetime) -> datetime:
        return _naive_utc(value)


class TransactionIn(BaseModel):
    type: TransactionType
    category_id: Optional[int] = None
    amount: Decimal
    note: Optional[str] = None
    date: Optional[datetime] = None
    status: TransactionStatus = TransactionStatus.completed
    currency: CurrencyCode = CurrencyCode.usd
    tags: list[str] = Field(default_factory=list)
    location: Optional[str] = Field(default=None, max_length=100)
    source: Optional[str] = Field(default=None, max_length=40)
    is_recurring: bool = False
    recurring_pattern: Optional[RecurringPatternIn] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> Any:
        return _coerce_enum(
            TransactionType, value, "Valid transaction type is required"
        )

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Any:
        return _coerce_amount(value, "Valid amount is required")

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        return _coerce_enum(TransactionStatus, value, "Invalid transaction status")

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> Any:
        return _coerce_enum(CurrencyCode, value, "Invalid currency")

    @field_validator("date")
    @classmethod
    def _date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class TransactionPatch(BaseModel):
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    amount: Optional[Decimal] = None
    note: Optional[str] = None
    date: Optional[datetime] = None
    status: Optional[TransactionStatus] = None
    currency: Optional[CurrencyCode] = None
    tags: Optional[list[str]] = None
    location: Optional[str] = Field(default=None, max_length=100)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> Any:
        return _coerce_enum(
            TransactionType, value, "Valid transaction type is required"
        )

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Any:
        return _coerce_amount(value, "Valid amount is required")

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        return _coerce_enum(TransactionStatus, value, "Invalid transaction status")

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> Any:
        return _coerce_enum(CurrencyCode, value, "Invalid currency")

    @field_validator("date")
    @classmethod
    def _date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class BulkTransactionsIn(BaseModel):
    transactions: list[TransactionIn] = Field(default_factory=list)


class PeriodIn(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class AllocationIn(BaseModel):
    """One ``categories[]`` entry. Spent amounts are never accepted from clients."""

    category_id: Optional[int] = None
    allocated_amount: Optional[Decimal] = None
    color: Optional[str] = Field(default=None, max_length=9)

    @field_validator("allocated_amount", mode="before")
    @classmethod
    def _allocated_amount(cls, value: Any) -> Any:
        return _coerce_amount(
            value, "Each category must include categoryId and allocated amount"
        )


class NotificationsIn(BaseModel):
    enabled: bool = True
    threshold: int = 80
    email_alerts: bool = True
    push_alerts: bool = True


class BudgetIn(BaseModel):
    name: Optional[str] = None
    type: BudgetType = BudgetType.monthly
    period: Optional[PeriodIn] = None
    categories: Optional[list[AllocationIn]] = None
    currency: CurrencyCode = CurrencyCode.usd
    notifications: NotificationsIn = Field(default_factory=NotificationsIn)
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> Any:
        return _coerce_enum(BudgetType, value, "Invalid budget type")

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> Any:
        return _coerce_enum(CurrencyCode, value, "Invalid currency")


class BudgetPatch(BaseModel):
    name: Optional[str] = None
    type: Optional[BudgetType] = None
    period: Optional[PeriodIn] = None
    categories: Optional[list[AllocationIn]] = None
    currency: Optional[CurrencyCode] = None
    notifications: Optional[NotificationsIn] = None
    tags: Optional[list[str]] = None
    notes: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> Any:
        return _coerce_enum(BudgetType, value, "Invalid budget type")

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> Any:
        return _coerce_enum(CurrencyCode, value, "Invalid currency")


class BudgetTemplateIn(BaseModel):
    template: str
    name: Optional[str] = None
    period: Optional[PeriodIn] = None


class BudgetDuplicateIn(BaseModel):
    name: Optional[str] = None
    period: Optional[PeriodIn] = None


class BudgetListQuery(BaseModel):
    status: Optional[BudgetStatus] = None
    type: Optional[BudgetType] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        return _coerce_enum(BudgetStatus, value, "Invalid status filter")

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> Any:
        return _coerce_enum(BudgetType, value, "Invalid type filter")
