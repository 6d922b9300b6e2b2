from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from rapidfuzz.distance import Levenshtein
from sqlalchemy import case, extract, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from alerts import Alert, generate_alerts
from config import get_settings
from database import write_scope
from errors import (
    DuplicateName,
    EmptyCategories,
    InvalidCategoryReference,
    NotFound,
    ValidationFailed,
)
from models import (
    Budget,
    BudgetAllocation,
    BudgetStatus,
    BudgetType,
    Category,
    CategoryState,
    CategoryType,
    DEFAULT_ALLOCATION_COLOR,
    Transaction,
    TransactionStatus,
    TransactionTag,
    TransactionType,
)
from periods import default_period
from reconciliation import BudgetSnapshot, reconcile, reconcile_covering
from recurrence import expand_occurrences
from schemas import (
    AllocationIn,
    BudgetDuplicateIn,
    BudgetIn,
    BudgetPatch,
    BudgetTemplateIn,
    CategoryIn,
    CategoryPatch,
    NotificationsIn,
    PeriodIn,
    TransactionIn,
    TransactionPatch,
)
from validation import (
    check_allocations,
    check_budget_name,
    check_budget_notes,
    check_category_name,
    check_no_duplicate_categories,
    check_note,
    check_period,
    check_tags,
    check_threshold,
    check_transaction_amount,
    check_transaction_category,
    check_transaction_type,
    to_cents,
)

logger = logging.getLogger(__name__)


@dataclass
class Page:
    items: list[Any]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


def _page_window(page: int, limit: int) -> tuple[int, int]:
    max_limit = get_settings().max_page_limit
    return max(page, 1), min(max(limit, 1), max_limit)


def _count(session: Session, stmt) -> int:
    subquery = stmt.order_by(None).subquery()
    return int(session.scalar(select(func.count()).select_from(subquery)) or 0)


@dataclass
class CategoryFilters:
    type: Optional[CategoryType] = None
    search: Optional[str] = None
    include_archived: bool = False


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _name_taken(self, name: str, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _has_transactions(self, category_id: int) -> bool:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.category_id == category_id
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = check_category_name(data.name)
        if self._name_taken(name):
            raise DuplicateName()
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
        )
        with write_scope(self.session):
            self.session.add(category)
        self.session.refresh(category)
        logger.info(f"category created: id={category.id} user_id={self.user_id}")
        return category

    def list(
        self,
        filters: Optional[CategoryFilters] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page:
        filters = filters or CategoryFilters()
        page, limit = _page_window(page, limit)
        stmt = select(Category).where(Category.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Category.type == filters.type)
        if not filters.include_archived:
            stmt = stmt.where(Category.state == CategoryState.active)
        if filters.search:
            term = filters.search.strip().lower()
            stmt = stmt.where(func.lower(Category.name).contains(term, autoescape=True))

        total = _count(self.session, stmt)
        items = self.session.scalars(
            stmt.order_by(Category.type, Category.name)
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return Page(items=list(items), total=total, page=page, limit=limit)

    def update(self, category_id: int, data: CategoryPatch) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)

        name = None
        if "name" in changes:
            name = check_category_name(changes["name"])
            if self._name_taken(name, exclude_id=category.id):
                raise DuplicateName()
        new_type = changes.get("type")
        if (
            new_type is not None
            and new_type != category.type
            and self._has_transactions(category.id)
        ):
            raise ValidationFailed(
                "Cannot change the type of a category that has transactions"
            )

        with write_scope(self.session):
            if name is not None and name != category.name:
                category.name = name
                # keep the denormalized name on transactions in step
                self.session.execute(
                    update(Transaction)
                    .where(Transaction.category_id == category.id)
                    .values(category_name=name)
                )
            if new_type is not None:
                category.type = new_type
            if "color" in changes:
                category.color = changes["color"]
            if "icon" in changes:
                category.icon = changes["icon"]
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> Category:
        category = self.get(category_id)
        if category.archived:
            return category
        with write_scope(self.session):
            category.state = CategoryState.archived
            category.archived_at = datetime.utcnow()
        logger.info(f"category archived: id={category.id} user_id={self.user_id}")
        return category

    def restore(self, category_id: int) -> Category:
        category = self.get(category_id)
        if not category.archived:
            return category
        if self._name_taken(category.name, exclude_id=category.id):
            raise DuplicateName()
        with write_scope(self.session):
            category.state = CategoryState.active
            category.archived_at = None
        return category


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    status: Optional[TransactionStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    tags: list[str] = field(default_factory=list)
    query: Optional[str] = None


@dataclass(frozen=True)
class TransactionSummary:
    total_income_cents: int
    total_expense_cents: int
    total_transfer_cents: int
    transaction_count: int
    average_amount_cents: float


@dataclass
class TransactionPage(Page):
    summary: Optional[TransactionSummary] = None


@dataclass(frozen=True)
class TransactionAnalytics:
    summary: TransactionSummary
    category_breakdown: list[dict[str, Any]]
    monthly_trends: list[dict[str, Any]]
    top_spending_categories: list[dict[str, Any]]
    net_savings_cents: int


SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "created_at": Transaction.created_at,
}


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _check(
        self, values: dict[str, Any], *, keep_category_id: Optional[int] = None
    ) -> dict[str, Any]:
        """Run the write gate over a full set of transaction fields.

        ``keep_category_id`` names a category already attached to the record;
        it stays acceptable even if it has been archived since.
        """
        txn_type = check_transaction_type(values.get("type"))
        amount_cents = check_transaction_amount(values.get("amount"))
        note = check_note(values.get("note"))
        category_id = values.get("category_id")
        category = self.session.get(Category, category_id) if category_id else None
        category = check_transaction_category(
            txn_type,
            category_id,
            category,
            self.user_id,
            allow_archived=category_id is not None and category_id == keep_category_id,
        )
        return {
            "type": txn_type,
            "amount_cents": amount_cents,
            "note": note,
            "category_id": category.id if category else None,
            "category_name": category.name if category else None,
            "tags": check_tags(values.get("tags")),
        }

    def _new_transaction(
        self,
        checked: dict[str, Any],
        data: TransactionIn,
        when: datetime,
        *,
        with_pattern: bool = False,
    ) -> Transaction:
        pattern = data.recurring_pattern if with_pattern else None
        txn = Transaction(
            user_id=self.user_id,
            type=checked["type"],
            category_id=checked["category_id"],
            category_name=checked["category_name"],
            amount_cents=checked["amount_cents"],
            currency_code=data.currency,
            note=checked["note"],
            date=when,
            status=data.status,
            location=data.location,
            source=data.source,
            is_recurring=with_pattern and data.is_recurring,
            recurrence_frequency=pattern.frequency if pattern else None,
            recurrence_interval=pattern.interval if pattern else None,
            recurrence_end_date=pattern.end_date if pattern else None,
        )
        txn.tag_rows = [TransactionTag(name=tag) for tag in checked["tags"]]
        return txn

    @staticmethod
    def _set_tags(txn: Transaction, tags: list[str]) -> None:
        wanted = set(tags)
        kept = [row for row in txn.tag_rows if row.name in wanted]
        present = {row.name for row in kept}
        kept.extend(TransactionTag(name=tag) for tag in tags if tag not in present)
        txn.tag_rows = kept

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tag_rows))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        checked = self._check(data.model_dump())
        when = data.date or datetime.utcnow()
        occurrences: list[datetime] = []
        if data.is_recurring and data.recurring_pattern is not None:
            pattern = data.recurring_pattern
            occurrences = expand_occurrences(
                when,
                pattern.frequency,
                pattern.interval,
                pattern.end_date,
                limit=get_settings().max_recurring_occurrences,
            )

        txn = self._new_transaction(checked, data, when, with_pattern=True)
        with write_scope(self.session):
            self.session.add(txn)
            for moment in occurrences:
                self.session.add(self._new_transaction(checked, data, moment))
            self.session.flush()
            reconcile_covering(self.session, self.user_id, [when, *occurrences])
        self.session.refresh(txn)
        logger.info(
            f"transaction created: id={txn.id} user_id={self.user_id} "
            f"occurrences={len(occurrences)}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        merged: dict[str, Any] = {
            "type": txn.type,
            "amount": Decimal(txn.amount_cents) / 100,
            "note": txn.note,
            "category_id": txn.category_id,
            "tags": txn.tags,
        }
        merged.update({key: value for key, value in changes.items() if key in merged})
        checked = self._check(merged, keep_category_id=txn.category_id)

        old_date = txn.date
        with write_scope(self.session):
            txn.type = checked["type"]
            txn.amount_cents = checked["amount_cents"]
            txn.note = checked["note"]
            txn.category_id = checked["category_id"]
            txn.category_name = checked["category_name"]
            if changes.get("date") is not None:
                txn.date = changes["date"]
            if changes.get("status") is not None:
                txn.status = changes["status"]
            if changes.get("currency") is not None:
                txn.currency_code = changes["currency"]
            if "location" in changes:
                txn.location = changes["location"]
            if "tags" in changes:
                self._set_tags(txn, checked["tags"])
            self.session.flush()
            reconcile_covering(self.session, self.user_id, [old_date, txn.date])
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        moment = txn.date
        with write_scope(self.session):
            self.session.delete(txn)
            self.session.flush()
            reconcile_covering(self.session, self.user_id, [moment])
        logger.info(f"transaction deleted: id={transaction_id} user_id={self.user_id}")

    def _conditions(self, filters: TransactionFilters) -> list:
        conditions = [Transaction.user_id == self.user_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category_id is not None:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.status:
            conditions.append(Transaction.status == filters.status)
        if filters.start:
            conditions.append(Transaction.date >= filters.start)
        if filters.end:
            conditions.append(Transaction.date <= filters.end)
        if filters.min_amount is not None:
            conditions.append(Transaction.amount_cents >= to_cents(filters.min_amount))
        if filters.max_amount is not None:
            conditions.append(Transaction.amount_cents <= to_cents(filters.max_amount))
        if filters.tags:
            conditions.append(
                Transaction.tag_rows.any(TransactionTag.name.in_(filters.tags))
            )
        if filters.query:
            term = filters.query.strip().lower()
            conditions.append(
                or_(
                    func.lower(Transaction.note).contains(term, autoescape=True),
                    func.lower(func.coalesce(Transaction.category_name, "")).contains(
                        term, autoescape=True
                    ),
                    func.lower(func.coalesce(Transaction.location, "")).contains(
                        term, autoescape=True
                    ),
                )
            )
        return conditions

    def _summary(self, conditions: list) -> TransactionSummary:
        def total_for(txn_type: TransactionType):
            return func.coalesce(
                func.sum(
                    case(
                        (Transaction.type == txn_type, Transaction.amount_cents),
                        else_=0,
                    )
                ),
                0,
            )

        stmt = select(
            total_for(TransactionType.income),
            total_for(TransactionType.expense),
            total_for(TransactionType.transfer),
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount_cents), 0),
        ).where(*conditions)
        income, expense, transfer, count, total = self.session.execute(stmt).one()
        count = int(count or 0)
        return TransactionSummary(
            total_income_cents=int(income),
            total_expense_cents=int(expense),
            total_transfer_cents=int(transfer),
            transaction_count=count,
            average_amount_cents=(int(total) / count) if count else 0.0,
        )

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "date",
        sort_order: str = "desc",
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        column = SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValidationFailed(
                f"Invalid sort field. Use one of: {', '.join(SORT_COLUMNS)}"
            )
        if sort_order not in ("asc", "desc"):
            raise ValidationFailed("Invalid sort order. Use 'asc' or 'desc'")
        page, limit = _page_window(page, limit)

        conditions = self._conditions(filters)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tag_rows))
            .where(*conditions)
            .order_by(ordering, Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = self.session.scalars(stmt).all()
        summary = self._summary(conditions)
        return TransactionPage(
            items=list(items),
            total=summary.transaction_count,
            page=page,
            limit=limit,
            summary=summary,
        )

    def analytics(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> TransactionAnalytics:
        if start and end and end < start:
            raise ValidationFailed("Start date must be before end date")
        conditions = self._conditions(
            TransactionFilters(status=TransactionStatus.completed, start=start, end=end)
        )
        summary = self._summary(conditions)

        breakdown_rows = self.session.execute(
            select(
                Transaction.category_id,
                Transaction.category_name,
                Transaction.type,
                func.sum(Transaction.amount_cents),
                func.count(Transaction.id),
            )
            .where(*conditions, Transaction.category_id.is_not(None))
            .group_by(Transaction.category_id, Transaction.category_name, Transaction.type)
            .order_by(func.sum(Transaction.amount_cents).desc())
        ).all()
        breakdown = [
            {
                "category_id": category_id,
                "category_name": name,
                "type": txn_type,
                "total_cents": int(total),
                "count": int(count),
                "average_cents": int(total) / int(count),
            }
            for category_id, name, txn_type, total, count in breakdown_rows
        ]

        year = extract("year", Transaction.date)
        month = extract("month", Transaction.date)
        trend_rows = self.session.execute(
            select(
                year,
                month,
                Transaction.type,
                func.sum(Transaction.amount_cents),
                func.count(Transaction.id),
            )
            .where(*conditions)
            .group_by(year, month, Transaction.type)
            .order_by(year, month)
        ).all()
        trends = [
            {
                "year": int(y),
                "month": int(m),
                "type": txn_type,
                "total_cents": int(total),
                "count": int(count),
            }
            for y, m, txn_type, total, count in trend_rows
        ]

        top_spending = [
            row for row in breakdown if row["type"] == TransactionType.expense
        ][:5]
        return TransactionAnalytics(
            summary=summary,
            category_breakdown=breakdown,
            monthly_trends=trends,
            top_spending_categories=top_spending,
            net_savings_cents=summary.total_income_cents - summary.total_expense_cents,
        )

    def bulk_import(self, items: Sequence[TransactionIn]) -> list[Transaction]:
        if not items:
            raise ValidationFailed("Invalid transactions data")
        now = datetime.utcnow()
        created: list[Transaction] = []
        for index, data in enumerate(items, start=1):
            try:
                checked = self._check(data.model_dump())
            except ValidationFailed as exc:
                raise type(exc)(f"Transaction {index}: {exc.message}") from exc
            created.append(self._new_transaction(checked, data, data.date or now))

        with write_scope(self.session):
            self.session.add_all(created)
            self.session.flush()
            reconcile_covering(self.session, self.user_id, [t.date for t in created])
        logger.info(f"transactions imported: count={len(created)} user_id={self.user_id}")
        return created


@dataclass(frozen=True)
class ReconciledBudget:
    budget: Budget
    snapshot: BudgetSnapshot


@dataclass(frozen=True)
class BudgetAnalytics:
    budget: Budget
    snapshot: BudgetSnapshot
    recent_transactions: list[Transaction]
    alerts: list[Alert]


@dataclass(frozen=True)
class BudgetOverview:
    budgets: list[ReconciledBudget]
    total_budget_cents: int
    total_spent_cents: int
    average_utilization: float

    @property
    def remaining_cents(self) -> int:
        return self.total_budget_cents - self.total_spent_cents


# (category name, allocated cents, color)
BUDGET_TEMPLATES: dict[str, tuple[str, BudgetType, list[tuple[str, int, str]]]] = {
    "monthly": (
        "Monthly Budget",
        BudgetType.monthly,
        [
            ("food", 30000, "#EF4444"),
            ("transport", 15000, "#3B82F6"),
            ("entertainment", 10000, "#10B981"),
            ("shopping", 20000, "#F59E0B"),
            ("bills", 50000, "#8B5CF6"),
            ("health", 10000, "#EC4899"),
            ("education", 15000, "#06B6D4"),
            ("travel", 20000, "#84CC16"),
            ("other_expense", 10000, "#6B7280"),
        ],
    ),
    "yearly": (
        "Yearly Budget",
        BudgetType.yearly,
        [
            ("food", 360000, "#EF4444"),
            ("transport", 180000, "#3B82F6"),
            ("entertainment", 120000, "#10B981"),
            ("shopping", 240000, "#F59E0B"),
            ("bills", 600000, "#8B5CF6"),
            ("health", 120000, "#EC4899"),
            ("education", 180000, "#06B6D4"),
            ("travel", 240000, "#84CC16"),
            ("other_expense", 120000, "#6B7280"),
        ],
    ),
}


def _match_category(name: str, categories: Sequence[Category]) -> Optional[Category]:
    target = name.replace("_", " ").strip().lower()
    for category in categories:
        if category.name.strip().lower() == target:
            return category

    best_distance: Optional[int] = None
    best: list[Category] = []
    for category in categories:
        dist = int(Levenshtein.distance(target, category.name.strip().lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [category]
        elif dist == best_distance:
            best.append(category)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return None


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _load(self, budget_id: int) -> Budget:
        stmt = (
            select(Budget)
            .options(
                selectinload(Budget.allocations).selectinload(BudgetAllocation.category)
            )
            .where(Budget.user_id == self.user_id, Budget.id == budget_id)
        )
        budget = self.session.scalar(stmt)
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def _resolve_allocations(
        self,
        allocations: Optional[Sequence[AllocationIn]],
        *,
        keep_category_ids: Iterable[int] = (),
    ) -> list[tuple[int, int, Optional[str]]]:
        resolved = check_allocations(allocations)
        wanted = {category_id for category_id, _, _ in resolved}
        usable = set(
            self.session.scalars(
                select(Category.id).where(
                    Category.user_id == self.user_id,
                    Category.id.in_(wanted),
                    Category.state == CategoryState.active,
                )
            )
        )
        # rows already on the budget stay valid after their category is archived
        usable.update(set(keep_category_ids) & wanted)
        if usable != wanted:
            raise InvalidCategoryReference()
        return resolved

    def _snapshot(self, budget: Budget) -> ReconciledBudget:
        return ReconciledBudget(budget=budget, snapshot=reconcile(self.session, budget))

    def create(self, data: BudgetIn) -> ReconciledBudget:
        check_no_duplicate_categories(data.categories)
        name = check_budget_name(data.name)
        period = data.period or PeriodIn()
        start, end = check_period(period.start_date, period.end_date)
        allocations = self._resolve_allocations(data.categories)
        tags = check_tags(data.tags)
        notes = check_budget_notes(data.notes)
        threshold = check_threshold(data.notifications.threshold)

        budget = Budget(
            user_id=self.user_id,
            name=name,
            type=data.type,
            start_date=start,
            end_date=end,
            currency_code=data.currency,
            status=BudgetStatus.active,
            notifications_enabled=data.notifications.enabled,
            notification_threshold=threshold,
            email_alerts=data.notifications.email_alerts,
            push_alerts=data.notifications.push_alerts,
            tags_json=json.dumps(tags),
            notes=notes,
        )
        budget.allocations = [
            BudgetAllocation(
                category_id=category_id,
                position=position,
                allocated_cents=cents,
                color=color or DEFAULT_ALLOCATION_COLOR,
            )
            for position, (category_id, cents, color) in enumerate(allocations)
        ]
        with write_scope(self.session):
            self.session.add(budget)
            self.session.flush()
            result = self._snapshot(budget)
        logger.info(
            f"budget created: id={budget.id} user_id={self.user_id} "
            f"total_budget_cents={result.snapshot.total_budget_cents}"
        )
        return result

    def get(self, budget_id: int) -> ReconciledBudget:
        budget = self._load(budget_id)
        with write_scope(self.session):
            result = self._snapshot(budget)
        return result

    def list(
        self,
        status: Optional[BudgetStatus] = None,
        budget_type: Optional[BudgetType] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        page, limit = _page_window(page, limit)
        stmt = select(Budget).where(Budget.user_id == self.user_id)
        if status:
            stmt = stmt.where(Budget.status == status)
        if budget_type:
            stmt = stmt.where(Budget.type == budget_type)

        total = _count(self.session, stmt)
        budgets = self.session.scalars(
            stmt.options(
                selectinload(Budget.allocations).selectinload(BudgetAllocation.category)
            )
            .order_by(Budget.start_date.desc(), Budget.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        with write_scope(self.session):
            items = [self._snapshot(budget) for budget in budgets]
        return Page(items=items, total=total, page=page, limit=limit)

    def update(self, budget_id: int, data: BudgetPatch) -> ReconciledBudget:
        budget = self._load(budget_id)
        fields = data.model_fields_set

        if "categories" in fields:
            check_no_duplicate_categories(data.categories)
        name = check_budget_name(data.name) if "name" in fields else None
        period = None
        if "period" in fields:
            given = data.period or PeriodIn()
            period = check_period(given.start_date, given.end_date)
        allocations = None
        if "categories" in fields:
            allocations = self._resolve_allocations(
                data.categories,
                keep_category_ids=[row.category_id for row in budget.allocations],
            )
        tags = check_tags(data.tags) if "tags" in fields else None
        notes = check_budget_notes(data.notes) if "notes" in fields else None
        notifications = data.notifications if "notifications" in fields else None
        if notifications is not None:
            check_threshold(notifications.threshold)

        with write_scope(self.session):
            if name is not None:
                budget.name = name
            if period is not None:
                budget.start_date, budget.end_date = period
            if data.type is not None:
                budget.type = data.type
            if data.currency is not None:
                budget.currency_code = data.currency
            if notifications is not None:
                budget.notifications_enabled = notifications.enabled
                budget.notification_threshold = notifications.threshold
                budget.email_alerts = notifications.email_alerts
                budget.push_alerts = notifications.push_alerts
            if tags is not None:
                budget.tags_json = json.dumps(tags)
            if "notes" in fields:
                budget.notes = notes
            if allocations is not None:
                self._replace_allocations(budget, allocations)
            self.session.flush()
            result = self._snapshot(budget)
        logger.info(f"budget updated: id={budget.id} user_id={self.user_id}")
        return result

    @staticmethod
    def _replace_allocations(
        budget: Budget, allocations: list[tuple[int, int, Optional[str]]]
    ) -> None:
        existing = {row.category_id: row for row in budget.allocations}
        rows: list[BudgetAllocation] = []
        for position, (category_id, cents, color) in enumerate(allocations):
            row = existing.get(category_id) or BudgetAllocation(category_id=category_id)
            row.position = position
            row.allocated_cents = cents
            row.color = color or row.color or DEFAULT_ALLOCATION_COLOR
            rows.append(row)
        budget.allocations = rows

    def delete(self, budget_id: int) -> Budget:
        budget = self._load(budget_id)
        if budget.status != BudgetStatus.cancelled:
            with write_scope(self.session):
                budget.status = BudgetStatus.cancelled
            logger.info(f"budget cancelled: id={budget.id} user_id={self.user_id}")
        return budget

    def analytics(self, budget_id: int) -> BudgetAnalytics:
        budget = self._load(budget_id)
        with write_scope(self.session):
            snapshot = reconcile(self.session, budget)
        recent = self.session.scalars(
            select(Transaction)
            .options(selectinload(Transaction.tag_rows))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.status == TransactionStatus.completed,
                Transaction.date >= budget.start_date,
                Transaction.date <= budget.end_date,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(get_settings().recent_transactions_limit)
        ).all()
        return BudgetAnalytics(
            budget=budget,
            snapshot=snapshot,
            recent_transactions=list(recent),
            alerts=generate_alerts(snapshot, snapshot.categories),
        )

    def overview(self) -> BudgetOverview:
        budgets = self.session.scalars(
            select(Budget)
            .options(
                selectinload(Budget.allocations).selectinload(BudgetAllocation.category)
            )
            .where(Budget.user_id == self.user_id, Budget.status == BudgetStatus.active)
            .order_by(Budget.start_date.desc(), Budget.id.desc())
        ).all()
        with write_scope(self.session):
            items = [self._snapshot(budget) for budget in budgets]
        utilizations = [item.snapshot.utilization_percentage for item in items]
        return BudgetOverview(
            budgets=items,
            total_budget_cents=sum(i.snapshot.total_budget_cents for i in items),
            total_spent_cents=sum(i.snapshot.total_spent_cents for i in items),
            average_utilization=(
                sum(utilizations) / len(utilizations) if utilizations else 0.0
            ),
        )

    def create_from_template(self, data: BudgetTemplateIn) -> ReconciledBudget:
        template = BUDGET_TEMPLATES.get(data.template)
        if template is None:
            raise ValidationFailed(
                "Invalid template. Available templates: "
                + ", ".join(BUDGET_TEMPLATES)
            )
        default_name, budget_type, lines = template

        categories = self.session.scalars(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == CategoryType.expense,
                Category.state == CategoryState.active,
            )
        ).all()
        allocations: list[AllocationIn] = []
        used: set[int] = set()
        for name, cents, color in lines:
            match = _match_category(name, categories)
            if match is None or match.id in used:
                continue
            used.add(match.id)
            allocations.append(
                AllocationIn(
                    category_id=match.id,
                    allocated_amount=Decimal(cents) / 100,
                    color=color,
                )
            )
        if not allocations:
            raise EmptyCategories("No expense categories match the template")

        period = data.period
        if period is None or (period.start_date is None and period.end_date is None):
            window = default_period(budget_type)
            period = PeriodIn(start_date=window.start, end_date=window.end)
        return self.create(
            BudgetIn(
                name=data.name or default_name,
                type=budget_type,
                period=period,
                categories=allocations,
            )
        )

    def duplicate(self, budget_id: int, data: BudgetDuplicateIn) -> ReconciledBudget:
        original = self._load(budget_id)
        return self.create(
            BudgetIn(
                name=data.name or f"{original.name} copy",
                type=original.type,
                period=data.period,
                categories=[
                    AllocationIn(
                        category_id=row.category_id,
                        allocated_amount=Decimal(row.allocated_cents) / 100,
                        color=row.color,
                    )
                    for row in original.allocations
                ],
                currency=original.currency_code,
                notifications=NotificationsIn(
                    enabled=original.notifications_enabled,
                    threshold=original.notification_threshold,
                    email_alerts=original.email_alerts,
                    push_alerts=original.push_alerts,
                ),
                tags=budget_tags(original),
                notes=original.notes,
            )
        )


def budget_tags(budget: Budget) -> list[str]:
    if not budget.tags_json:
        return []
    return list(json.loads(budget.tags_json))
