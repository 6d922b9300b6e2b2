from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import (
    Conflict,
    DuplicateCategory,
    EmptyCategories,
    InvalidAllocation,
    InvalidCategoryReference,
    InvalidPeriod,
    NotFound,
    ValidationFailed,
)
from models import Budget, BudgetStatus, BudgetType, CategoryType, TransactionType
from schemas import (
    AllocationIn,
    BudgetDuplicateIn,
    BudgetIn,
    BudgetPatch,
    BudgetTemplateIn,
    CategoryIn,
    NotificationsIn,
    PeriodIn,
    TransactionIn,
)
from services import BudgetService, CategoryService, TransactionService

JUNE = PeriodIn(start_date=datetime(2025, 6, 1), end_date=datetime(2025, 6, 30, 23, 59))


def _category(session: Session, name: str, user_id: str = "alice", kind=CategoryType.expense):
    return CategoryService(session, user_id).create(CategoryIn(name=name, type=kind))


def _budget_in(*allocations: tuple[int, str], **extra) -> BudgetIn:
    values = {
        "name": "June",
        "period": JUNE,
        "categories": [
            AllocationIn(category_id=category_id, allocated_amount=amount)
            for category_id, amount in allocations
        ],
    }
    values.update(extra)
    return BudgetIn(**values)


def test_total_budget_tracks_allocations() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        fun = _category(session, "Fun")
        rent = _category(session, "Rent")
        budgets = BudgetService(session, "alice")

        created = budgets.create(_budget_in((food.id, "500"), (fun.id, "200.50")))
        assert created.budget.total_budget_cents == 70050
        assert created.budget.status == BudgetStatus.active
        assert created.budget.type == BudgetType.monthly

        updated = budgets.update(
            created.budget.id,
            BudgetPatch(
                categories=[
                    AllocationIn(category_id=fun.id, allocated_amount=Decimal("100")),
                    AllocationIn(category_id=rent.id, allocated_amount=Decimal("900")),
                ]
            ),
        )
        assert updated.snapshot.total_budget_cents == 100000
        assert updated.budget.total_budget_cents == 100000
        assert [row.category_id for row in updated.budget.allocations] == [fun.id, rent.id]


def test_duplicate_category_is_a_conflict_even_with_other_errors() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, "alice")

        with pytest.raises(DuplicateCategory, match="duplicate Categoryid is not allowed"):
            budgets.create(_budget_in((food.id, "10"), (food.id, "20")))
        with pytest.raises(Conflict):
            budgets.create(
                _budget_in((food.id, "0"), (food.id, "20"), name="", period=None)
            )

        created = budgets.create(_budget_in((food.id, "10")))
        with pytest.raises(Conflict):
            budgets.update(
                created.budget.id,
                BudgetPatch(
                    name="  ",
                    categories=[
                        AllocationIn(category_id=food.id, allocated_amount=Decimal("1")),
                        AllocationIn(category_id=food.id, allocated_amount=Decimal("1")),
                    ],
                ),
            )


def test_period_must_be_ordered_on_create_and_update() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, "alice")
        same = datetime(2025, 6, 1)

        for start, end in [(same, same), (datetime(2025, 6, 2), same)]:
            with pytest.raises(InvalidPeriod, match="End date must be after start date"):
                budgets.create(
                    _budget_in(
                        (food.id, "10"), period=PeriodIn(start_date=start, end_date=end)
                    )
                )

        created = budgets.create(_budget_in((food.id, "10")))
        with pytest.raises(ValidationFailed):
            budgets.update(
                created.budget.id,
                BudgetPatch(period=PeriodIn(start_date=same, end_date=same)),
            )
        with pytest.raises(ValidationFailed, match="Budget period with start and end"):
            budgets.create(_budget_in((food.id, "10"), period=None))


def test_allocation_amount_must_be_positive() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, "alice")

        for amount in ["0", "-25"]:
            with pytest.raises(
                ValidationFailed, match="Allocated amount must be greater than 0"
            ):
                budgets.create(_budget_in((food.id, amount)))

        with pytest.raises(
            InvalidAllocation, match="Allocated amount must not exceed 9999999999.99"
        ):
            budgets.create(_budget_in((food.id, "1e20")))
        with pytest.raises(InvalidAllocation, match="Allocated amount must be at least 0.01"):
            budgets.create(_budget_in((food.id, "0.001")))
        assert session.scalar(select(func.count(Budget.id))) == 0

        with pytest.raises(InvalidAllocation, match="must include categoryId"):
            budgets.create(
                BudgetIn(name="June", period=JUNE, categories=[AllocationIn(category_id=food.id)])
            )
        with pytest.raises(EmptyCategories, match="At least one category is required"):
            budgets.create(BudgetIn(name="June", period=JUNE, categories=[]))
        assert session.scalar(select(func.count(Budget.id))) == 0


def test_name_notes_and_threshold_checks() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, "alice")

        with pytest.raises(ValidationFailed, match="Budget name is required"):
            budgets.create(_budget_in((food.id, "10"), name=" "))
        with pytest.raises(ValidationFailed, match="Budget name must be less than 100"):
            budgets.create(_budget_in((food.id, "10"), name="n" * 101))
        with pytest.raises(ValidationFailed, match="Notes must be less than 500"):
            budgets.create(_budget_in((food.id, "10"), notes="n" * 501))
        with pytest.raises(ValidationFailed, match="Tags must be less than 20"):
            budgets.create(_budget_in((food.id, "10"), tags=["t" * 21]))
        with pytest.raises(ValidationFailed, match="threshold"):
            budgets.create(
                _budget_in((food.id, "10"), notifications=NotificationsIn(threshold=101))
            )


def test_category_references_must_be_owned_and_active() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        old = _category(session, "Old")
        bobs = _category(session, "Food", user_id="bob")
        budgets = BudgetService(session, "alice")
        CategoryService(session, "alice").archive(old.id)

        for category_id in [bobs.id, old.id, 31337]:
            with pytest.raises(
                InvalidCategoryReference,
                match="One or more categories are invalid or archived",
            ):
                budgets.create(_budget_in((food.id, "10"), (category_id, "10")))


def test_archived_category_stays_on_existing_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        fun = _category(session, "Fun")
        gone = _category(session, "Gone")
        budgets = BudgetService(session, "alice")
        created = budgets.create(_budget_in((food.id, "100"), (fun.id, "50")))
        TransactionService(session, "alice").create(
            TransactionIn(
                type=TransactionType.expense,
                category_id=fun.id,
                amount="20",
                note="Cinema",
                date=datetime(2025, 6, 7),
            )
        )
        CategoryService(session, "alice").archive(fun.id)
        CategoryService(session, "alice").archive(gone.id)

        snapshot = budgets.get(created.budget.id).snapshot
        assert {r.category_id: r.spent_cents for r in snapshot.categories}[fun.id] == 2000

        # keeping the archived row is fine, adding a newly archived one is not
        kept = budgets.update(
            created.budget.id,
            BudgetPatch(
                categories=[
                    AllocationIn(category_id=fun.id, allocated_amount=Decimal("60")),
                ]
            ),
        )
        assert kept.snapshot.total_spent_cents == 2000
        with pytest.raises(InvalidCategoryReference):
            budgets.update(
                created.budget.id,
                BudgetPatch(
                    categories=[
                        AllocationIn(category_id=gone.id, allocated_amount=Decimal("5"))
                    ]
                ),
            )


def test_delete_cancels_but_budget_remains_readable() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, "alice")
        first = budgets.create(_budget_in((food.id, "100")))
        second = budgets.create(_budget_in((food.id, "100"), name="Other"))

        budgets.delete(first.budget.id)
        budgets.delete(first.budget.id)

        fetched = budgets.get(first.budget.id)
        assert fetched.budget.status == BudgetStatus.cancelled

        active = budgets.list(status=BudgetStatus.active)
        assert [item.budget.id for item in active.items] == [second.budget.id]
        assert budgets.list().total == 2

        with pytest.raises(NotFound, match="Budget not found"):
            BudgetService(session, "bob").get(first.budget.id)


def test_analytics_reports_recent_transactions_and_alerts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        fun = _category(session, "Fun")
        budgets = BudgetService(session, "alice")
        created = budgets.create(_budget_in((food.id, "100"), (fun.id, "100")))

        transactions = TransactionService(session, "alice")
        for day, amount in [(3, "60"), (4, "35")]:
            transactions.create(
                TransactionIn(
                    type=TransactionType.expense,
                    category_id=food.id,
                    amount=amount,
                    note="Market",
                    date=datetime(2025, 6, day),
                )
            )
        transactions.create(
            TransactionIn(
                type=TransactionType.expense,
                category_id=fun.id,
                amount="120",
                note="Concert",
                date=datetime(2025, 6, 5),
            )
        )

        result = budgets.analytics(created.budget.id)
        assert [t.amount_cents for t in result.recent_transactions] == [12000, 3500, 6000]
        assert [(a.level, a.scope) for a in result.alerts] == [
            ("critical", "overall"),
            ("warning", "Food"),
            ("critical", "Fun"),
        ]


def test_overview_totals_active_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, "alice")
        budgets.create(_budget_in((food.id, "100")))
        cancelled = budgets.create(_budget_in((food.id, "999"), name="Old"))
        budgets.delete(cancelled.budget.id)
        TransactionService(session, "alice").create(
            TransactionIn(
                type=TransactionType.expense,
                category_id=food.id,
                amount="50",
                note="Market",
                date=datetime(2025, 6, 3),
            )
        )

        overview = budgets.overview()
        assert len(overview.budgets) == 1
        assert overview.total_budget_cents == 10000
        assert overview.total_spent_cents == 5000
        assert overview.remaining_cents == 5000
        assert overview.average_utilization == 50.0


def test_template_matches_existing_expense_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        transport = _category(session, "Transprt")
        other = _category(session, "Other expense")
        _category(session, "Bills", kind=CategoryType.income)
        budgets = BudgetService(session, "alice")

        created = budgets.create_from_template(
            BudgetTemplateIn(template="monthly", period=JUNE)
        )
        assert created.budget.name == "Monthly Budget"
        rows = {row.category_id: row for row in created.budget.allocations}
        assert set(rows) == {food.id, transport.id, other.id}
        assert rows[food.id].allocated_cents == 30000
        assert rows[food.id].color == "#EF4444"
        assert created.snapshot.total_budget_cents == 55000

        yearly = budgets.create_from_template(BudgetTemplateIn(template="yearly"))
        assert yearly.budget.type == BudgetType.yearly
        assert yearly.budget.start_date.month == 1
        assert yearly.budget.end_date.month == 12

        with pytest.raises(ValidationFailed, match="Available templates: monthly, yearly"):
            budgets.create_from_template(BudgetTemplateIn(template="weekly"))


def test_template_without_matching_categories_fails() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _category(session, "Hobbies")
        with pytest.raises(EmptyCategories):
            BudgetService(session, "alice").create_from_template(
                BudgetTemplateIn(template="monthly", period=JUNE)
            )


def test_duplicate_copies_allocations_for_a_new_period() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _category(session, "Food")
        budgets = BudgetService(session, "alice")
        original = budgets.create(
            _budget_in((food.id, "100"), tags=["home"], notes="Household")
        )
        TransactionService(session, "alice").create(
            TransactionIn(
                type=TransactionType.expense,
                category_id=food.id,
                amount="40",
                note="Market",
                date=datetime(2025, 6, 3),
            )
        )

        july = PeriodIn(start_date=datetime(2025, 7, 1), end_date=datetime(2025, 7, 31))
        copy = budgets.duplicate(original.budget.id, BudgetDuplicateIn(period=july))
        assert copy.budget.id != original.budget.id
        assert copy.budget.name == "June copy"
        assert copy.budget.notes == "Household"
        assert copy.snapshot.total_budget_cents == 10000
        assert copy.snapshot.total_spent_cents == 0

        with pytest.raises(ValidationFailed):
            budgets.duplicate(original.budget.id, BudgetDuplicateIn())
