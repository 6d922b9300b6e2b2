from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from errors import InternalFault
from models import BudgetAllocation, CategoryType, TransactionStatus, TransactionType
from reconciliation import (
    BudgetHealth,
    classify_utilization,
    reconcile,
    utilization_percentage,
)
from schemas import (
    AllocationIn,
    BudgetIn,
    CategoryIn,
    PeriodIn,
    TransactionIn,
    TransactionPatch,
)
from services import BudgetService, CategoryService, TransactionService
from validation import cents_to_amount

JUNE = PeriodIn(
    start_date=datetime(2025, 6, 1), end_date=datetime(2025, 6, 30, 23, 59, 59)
)


def _seed(session: Session, user_id: str = "alice"):
    categories = CategoryService(session, user_id)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    fun = categories.create(CategoryIn(name="Fun", type=CategoryType.expense))
    budget = BudgetService(session, user_id).create(
        BudgetIn(
            name="June",
            period=JUNE,
            categories=[
                AllocationIn(category_id=food.id, allocated_amount=Decimal("500")),
                AllocationIn(category_id=fun.id, allocated_amount=Decimal("200")),
            ],
        )
    )
    return food, fun, budget


def _expense(category_id: int, amount: str, when: datetime, **extra) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        category_id=category_id,
        amount=amount,
        note="Spend",
        date=when,
        **extra,
    )


def _spent(snapshot) -> dict[int, int]:
    return {row.category_id: row.spent_cents for row in snapshot.categories}


def test_two_expenses_reconcile_into_the_right_row() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, fun, created = _seed(session)
        assert created.snapshot.total_budget_cents == 70000

        transactions = TransactionService(session, "alice")
        transactions.create(_expense(food.id, "45.99", datetime(2025, 6, 5)))
        transactions.create(_expense(food.id, "50.00", datetime(2025, 6, 20)))

        result = BudgetService(session, "alice").get(created.budget.id)
        snapshot = result.snapshot
        assert _spent(snapshot) == {food.id: 9599, fun.id: 0}
        assert snapshot.total_spent_cents == 9599
        assert cents_to_amount(snapshot.total_spent_cents) == 95.99
        assert cents_to_amount(snapshot.remaining_cents) == 604.01
        assert result.budget.total_budget_cents == 70000


def test_only_completed_expenses_inside_the_period_count() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, fun, created = _seed(session)
        salary = CategoryService(session, "alice").create(
            CategoryIn(name="Salary", type=CategoryType.income)
        )
        bobs_food, _, _ = _seed(session, "bob")
        other = CategoryService(session, "alice").create(
            CategoryIn(name="Rent", type=CategoryType.expense)
        )

        transactions = TransactionService(session, "alice")
        transactions.create(_expense(food.id, "10", datetime(2025, 6, 1)))
        transactions.create(_expense(food.id, "5", datetime(2025, 6, 30, 23, 59, 59)))
        transactions.create(
            _expense(food.id, "7", datetime(2025, 6, 2), status=TransactionStatus.pending)
        )
        transactions.create(
            _expense(
                food.id, "8", datetime(2025, 6, 2), status=TransactionStatus.cancelled
            )
        )
        transactions.create(_expense(food.id, "9", datetime(2025, 7, 1)))
        transactions.create(_expense(fun.id, "3", datetime(2025, 5, 31, 23, 59, 59)))
        transactions.create(_expense(other.id, "100", datetime(2025, 6, 3)))
        transactions.create(
            TransactionIn(
                type=TransactionType.income,
                category_id=salary.id,
                amount="2000",
                note="Pay",
                date=datetime(2025, 6, 15),
            )
        )
        transactions.create(
            TransactionIn(
                type=TransactionType.transfer,
                amount="50",
                note="Savings",
                date=datetime(2025, 6, 15),
            )
        )
        TransactionService(session, "bob").create(
            _expense(bobs_food.id, "42", datetime(2025, 6, 10))
        )

        snapshot = BudgetService(session, "alice").get(created.budget.id).snapshot
        assert _spent(snapshot) == {food.id: 1500, fun.id: 0}


def test_reconcile_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, fun, created = _seed(session)
        TransactionService(session, "alice").create(
            _expense(fun.id, "12.34", datetime(2025, 6, 9))
        )
        budget = created.budget

        first = reconcile(session, budget)
        second = reconcile(session, budget)
        assert _spent(first) == _spent(second) == {food.id: 0, fun.id: 1234}
        assert first.total_budget_cents == second.total_budget_cents == 70000


def test_reconcile_repairs_tampered_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _, created = _seed(session)
        TransactionService(session, "alice").create(
            _expense(food.id, "20", datetime(2025, 6, 9))
        )
        row = session.get(BudgetAllocation, created.budget.allocations[0].id)
        row.spent_cents = 123456
        created.budget.total_budget_cents = 1
        session.commit()

        snapshot = BudgetService(session, "alice").get(created.budget.id).snapshot
        assert _spent(snapshot)[food.id] == 2000
        assert snapshot.total_budget_cents == 70000


def test_write_paths_reconcile_covering_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _, june = _seed(session)
        july = BudgetService(session, "alice").create(
            BudgetIn(
                name="July",
                period=PeriodIn(
                    start_date=datetime(2025, 7, 1), end_date=datetime(2025, 7, 31)
                ),
                categories=[
                    AllocationIn(category_id=food.id, allocated_amount=Decimal("300"))
                ],
            )
        )
        transactions = TransactionService(session, "alice")
        txn = transactions.create(_expense(food.id, "25", datetime(2025, 6, 12)))

        # stored rows are already current without a budget read
        session.expire_all()
        assert june.budget.allocations[0].spent_cents == 2500

        transactions.update(txn.id, TransactionPatch(date=datetime(2025, 7, 2)))
        session.expire_all()
        assert june.budget.allocations[0].spent_cents == 0
        assert july.budget.allocations[0].spent_cents == 2500

        transactions.update(txn.id, TransactionPatch(status=TransactionStatus.pending))
        session.expire_all()
        assert july.budget.allocations[0].spent_cents == 0

        transactions.update(txn.id, TransactionPatch(status=TransactionStatus.completed))
        transactions.delete(txn.id)
        session.expire_all()
        assert july.budget.allocations[0].spent_cents == 0


def test_store_failure_surfaces_as_internal_fault(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, _, created = _seed(session)
        budget = created.budget

        def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr("reconciliation.spent_by_category", broken)
        with pytest.raises(InternalFault, match="disk I/O error"):
            BudgetService(session, "alice").get(budget.id)


def test_utilization_thresholds() -> None:
    assert utilization_percentage(9000, 10000) == 90.0
    assert utilization_percentage(10000, 10000) == 100.0
    assert utilization_percentage(7490, 10000) == 74.9
    assert utilization_percentage(500, 0) == 0.0

    assert classify_utilization(90.0) == BudgetHealth.critical
    assert classify_utilization(100.0) == BudgetHealth.exceeded
    assert classify_utilization(74.9) == BudgetHealth.good
    assert classify_utilization(75.0) == BudgetHealth.warning
    assert classify_utilization(utilization_percentage(9000, 10000)) == BudgetHealth.critical
