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


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class CategoryState(str, Enum):
    active = "active"
    archived = "archived"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    cancelled = "cancelled"


class RecurrenceFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class BudgetType(str, Enum):
    monthly = "monthly"
    yearly = "yearly"
    custom = "custom"


class BudgetStatus(str, Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class CurrencyCode(str, Enum):
    usd = "USD"
    eur = "EUR"
    gbp = "GBP"
    inr = "INR"
    cad = "CAD"
    aud = "AUD"


CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode,
    name="currencycode",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

DEFAULT_ALLOCATION_COLOR = "#3B82F6"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    state: Mapped[CategoryState] = mapped_column(
        SAEnum(CategoryState), default=CategoryState.active, nullable=False
    )
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    @property
    def archived(self) -> bool:
        return self.state == CategoryState.archived


class TransactionTag(Base):
    __tablename__ = "transaction_tags"

    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), primary_key=True
    )
    name: Mapped[str] = mapped_column(String(20), primary_key=True)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="tag_rows"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    # snapshot taken at write time so reads need no join
    category_name: Mapped[Optional[str]] = mapped_column(String(100))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    note: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.completed
    )
    location: Mapped[Optional[str]] = mapped_column(String(100))
    source: Mapped[Optional[str]] = mapped_column(String(40))
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence_frequency: Mapped[Optional[RecurrenceFrequency]] = mapped_column(
        SAEnum(RecurrenceFrequency)
    )
    recurrence_interval: Mapped[Optional[int]] = mapped_column(Integer)
    recurrence_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    tag_rows: Mapped[list["TransactionTag"]] = relationship(
        "TransactionTag",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionTag.name",
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "category_id IS NOT NULL OR type = 'transfer'",
            name="ck_transactions_category_required",
        ),
    )

    @property
    def tags(self) -> list[str]:
        return [row.name for row in self.tag_rows]


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[BudgetType] = mapped_column(
        SAEnum(BudgetType), nullable=False, default=BudgetType.monthly
    )
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # derived: written by reconciliation only
    total_budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency_code: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    status: Mapped[BudgetStatus] = mapped_column(
        SAEnum(BudgetStatus), nullable=False, default=BudgetStatus.active
    )
    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    notification_threshold: Mapped[int] = mapped_column(
        Integer, default=80, nullable=False
    )
    email_alerts: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_alerts: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    tags_json: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(String(500))
    last_reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    allocations: Mapped[list["BudgetAllocation"]] = relationship(
        "BudgetAllocation",
        back_populates="budget",
        cascade="all, delete-orphan",
        order_by="BudgetAllocation.position",
    )

    __table_args__ = (
        Index("ix_budgets_user_start", "user_id", "start_date"),
        Index("ix_budgets_user_status", "user_id", "status"),
        CheckConstraint("end_date > start_date", name="ck_budget_period_order"),
        CheckConstraint(
            "notification_threshold >= 0 AND notification_threshold <= 100",
            name="ck_budget_threshold_range",
        ),
    )


class BudgetAllocation(Base):
    __tablename__ = "budget_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # derived: written by reconciliation only
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    color: Mapped[str] = mapped_column(
        String(9), nullable=False, default=DEFAULT_ALLOCATION_COLOR
    )

    budget: Mapped["Budget"] = relationship("Budget", back_populates="allocations")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("budget_id", "category_id", name="uq_allocation_category"),
        CheckConstraint("allocated_cents > 0", name="ck_allocation_amount_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_allocation_spent_non_negative"),
    )
