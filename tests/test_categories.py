from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import DuplicateName, NotFound, ValidationFailed
from models import CategoryType, TransactionType
from schemas import CategoryIn, CategoryPatch, TransactionIn
from services import CategoryFilters, CategoryService, TransactionService


def test_category_names_are_unique_per_user_ignoring_case() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "alice")
        categories.create(CategoryIn(name="Groceries", type=CategoryType.expense))

        with pytest.raises(DuplicateName, match="Category with this name already exists"):
            categories.create(CategoryIn(name="groceries ", type=CategoryType.income))

        # another user may reuse the name
        other = CategoryService(session, "bob").create(
            CategoryIn(name="Groceries", type=CategoryType.expense)
        )
        assert other.user_id == "bob"


def test_blank_category_name_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValidationFailed, match="Category name is required"):
            CategoryService(session, "alice").create(
                CategoryIn(name="   ", type=CategoryType.expense)
            )


def test_get_hides_categories_of_other_users() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        mine = CategoryService(session, "alice").create(
            CategoryIn(name="Rent", type=CategoryType.expense)
        )
        with pytest.raises(NotFound, match="Category not found"):
            CategoryService(session, "bob").get(mine.id)
        with pytest.raises(NotFound):
            CategoryService(session, "alice").get(9999)


def test_list_filters_search_and_archived() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "alice")
        salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
        categories.create(CategoryIn(name="Food", type=CategoryType.expense))
        fast_food = categories.create(
            CategoryIn(name="Fast Food", type=CategoryType.expense)
        )
        categories.archive(fast_food.id)

        page = categories.list()
        assert {c.name for c in page.items} == {"Salary", "Food"}
        assert page.total == 2

        page = categories.list(CategoryFilters(search="FOOD", include_archived=True))
        assert {c.name for c in page.items} == {"Food", "Fast Food"}

        page = categories.list(CategoryFilters(type=CategoryType.income))
        assert [c.id for c in page.items] == [salary.id]


def test_search_treats_wildcards_literally() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "alice")
        categories.create(CategoryIn(name="Savings 10%", type=CategoryType.expense))
        categories.create(CategoryIn(name="Side_Gig", type=CategoryType.income))
        categories.create(CategoryIn(name="Hedge Fund", type=CategoryType.expense))

        page = categories.list(CategoryFilters(search="%"))
        assert [c.name for c in page.items] == ["Savings 10%"]

        page = categories.list(CategoryFilters(search="e_g"))
        assert [c.name for c in page.items] == ["Side_Gig"]


def test_archive_and_restore_are_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "alice")
        travel = categories.create(CategoryIn(name="Travel", type=CategoryType.expense))

        first = categories.archive(travel.id)
        archived_at = first.archived_at
        second = categories.archive(travel.id)
        assert second.archived
        assert second.archived_at == archived_at

        restored = categories.restore(travel.id)
        assert not restored.archived
        assert restored.archived_at is None
        assert not categories.restore(travel.id).archived


def test_rename_collision_and_transaction_name_snapshot() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "alice")
        food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
        categories.create(CategoryIn(name="Bills", type=CategoryType.expense))

        with pytest.raises(DuplicateName):
            categories.update(food.id, CategoryPatch(name="BILLS"))

        txn = TransactionService(session, "alice").create(
            TransactionIn(
                type=TransactionType.expense,
                category_id=food.id,
                amount="12.50",
                note="Lunch",
                date=datetime(2025, 3, 4, 12, 0),
            )
        )
        categories.update(food.id, CategoryPatch(name="Eating out", color="#EF4444"))

        session.expire_all()
        refreshed = TransactionService(session, "alice").get(txn.id)
        assert refreshed.category_name == "Eating out"
        assert categories.get(food.id).color == "#EF4444"


def test_type_change_is_rejected_once_transactions_exist() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        categories = CategoryService(session, "alice")
        gifts = categories.create(CategoryIn(name="Gifts", type=CategoryType.expense))

        # no transactions yet
        updated = categories.update(gifts.id, CategoryPatch(type=CategoryType.income))
        assert updated.type == CategoryType.income

        TransactionService(session, "alice").create(
            TransactionIn(
                type=TransactionType.income,
                category_id=gifts.id,
                amount="40",
                note="Birthday",
            )
        )
        with pytest.raises(ValidationFailed, match="Cannot change the type"):
            categories.update(gifts.id, CategoryPatch(type=CategoryType.expense))
