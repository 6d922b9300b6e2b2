"""Full-rescan reconciliation of budget spend against the transaction store.

Spend is never accumulated incrementally: every pass sums the completed
expense transactions inside the budget period and overwrites the stored
per-category totals, so a missed or failed pass is repaired by the next one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from database import store_error_reason
from errors import InternalFault
from models import (
    Budget,
    BudgetAllocation,
    BudgetStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from periods import Period

logger = logging.getLogger(__name__)


class BudgetHealth(str, Enum):
    good = "good"
    warning = "warning"
    critical = "critical"
    exceeded = "exceeded"


def utilization_percentage(spent_cents: int, allocated_cents: int) -> float:
    if allocated_cents <= 0:
        return 0.0
    return spent_cents * 100 / allocated_cents


def classify_utilization(percentage: float) -> BudgetHealth:
    if percentage >= 100:
        return BudgetHealth.exceeded
    if percentage >= 90:
        return BudgetHealth.critical
    if percentage >= 75:
        return BudgetHealth.warning
    return BudgetHealth.good


@dataclass(frozen=True)
class CategorySpend:
    category_id: int
    name: str
    color: str
    allocated_cents: int
    spent_cents: int

    @property
    def remaining_cents(self) -> int:
        return self.allocated_cents - self.spent_cents

    @property
    def percentage(self) -> float:
        return utilization_percentage(self.spent_cents, self.allocated_cents)

    @property
    def status(self) -> BudgetHealth:
        return classify_utilization(self.percentage)


@dataclass(frozen=True)
class BudgetSnapshot:
    budget_id: int
    name: str
    total_budget_cents: int
    total_spent_cents: int
    categories: tuple[CategorySpend, ...]
    reconciled_at: datetime

    @property
    def remaining_cents(self) -> int:
        return self.total_budget_cents - self.total_spent_cents

    @property
    def utilization_percentage(self) -> float:
        return utilization_percentage(self.total_spent_cents, self.total_budget_cents)

    @property
    def status(self) -> BudgetHealth:
        return classify_utilization(self.utilization_percentage)


def spent_by_category(
    session: Session, user_id: str, start: datetime, end: datetime
) -> dict[int, int]:
    stmt = (
        select(
            Transaction.category_id,
            func.coalesce(func.sum(Transaction.amount_cents), 0),
        )
        .where(
            Transaction.user_id == user_id,
            Transaction.type == TransactionType.expense,
            Transaction.status == TransactionStatus.completed,
            Transaction.category_id.is_not(None),
            Transaction.date >= start,
            Transaction.date <= end,
        )
        .group_by(Transaction.category_id)
    )
    return {category_id: int(total) for category_id, total in session.execute(stmt)}


def reconcile(
    session: Session, budget: Budget, *, now: Optional[datetime] = None
) -> BudgetSnapshot:
    """Recompute every allocation's spend for ``budget`` and flush it.

    The caller owns the transaction; nothing is committed here.
    """
    now = now or datetime.utcnow()
    try:
        totals = spent_by_category(
            session, budget.user_id, budget.start_date, budget.end_date
        )
        rows: list[CategorySpend] = []
        total_allocated = 0
        total_spent = 0
        for allocation in budget.allocations:
            allocation.spent_cents = totals.get(allocation.category_id, 0)
            total_allocated += allocation.allocated_cents
            total_spent += allocation.spent_cents
            rows.append(
                CategorySpend(
                    category_id=allocation.category_id,
                    name=allocation.category.name if allocation.category else "",
                    color=allocation.color,
                    allocated_cents=allocation.allocated_cents,
                    spent_cents=allocation.spent_cents,
                )
            )
        budget.total_budget_cents = total_allocated
        budget.last_reconciled_at = now
        session.flush()
    except SQLAlchemyError as exc:
        logger.error(f"reconcile failed: budget_id={budget.id} reason={exc}")
        raise InternalFault(store_error_reason(exc)) from exc

    logger.debug(
        f"reconcile: budget_id={budget.id} total_budget_cents={total_allocated} "
        f"total_spent_cents={total_spent}"
    )
    return BudgetSnapshot(
        budget_id=budget.id,
        name=budget.name,
        total_budget_cents=total_allocated,
        total_spent_cents=total_spent,
        categories=tuple(rows),
        reconciled_at=now,
    )


def budgets_covering(
    session: Session, user_id: str, moments: Iterable[datetime]
) -> list[Budget]:
    """Active budgets of ``user_id`` whose period contains any of ``moments``."""
    moments = sorted(set(moments))
    if not moments:
        return []
    stmt = (
        select(Budget)
        .options(selectinload(Budget.allocations).selectinload(BudgetAllocation.category))
        .where(
            Budget.user_id == user_id,
            Budget.status == BudgetStatus.active,
            Budget.start_date <= moments[-1],
            Budget.end_date >= moments[0],
        )
        .order_by(Budget.id)
    )
    budgets = session.scalars(stmt).all()
    covering = []
    for budget in budgets:
        period = Period(budget.start_date, budget.end_date)
        if any(period.covers(moment) for moment in moments):
            covering.append(budget)
    return covering


def reconcile_covering(
    session: Session, user_id: str, moments: Iterable[datetime]
) -> list[BudgetSnapshot]:
    try:
        budgets = budgets_covering(session, user_id, moments)
    except SQLAlchemyError as exc:
        raise InternalFault(store_error_reason(exc)) from exc
    return [reconcile(session, budget) for budget in budgets]
