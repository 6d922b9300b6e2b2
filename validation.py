"""Business-rule checks shared by the services.

Shape and enum membership are handled by the pydantic schemas; everything
here needs either a cross-field view or a precise failure message.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Sequence

from errors import (
    CategoryArchived,
    CategoryNotFound,
    CategoryOwnershipMismatch,
    CategoryTypeMismatch,
    DescriptionTooLong,
    DuplicateCategory,
    EmptyCategories,
    InvalidAllocation,
    InvalidAmount,
    InvalidPeriod,
    InvalidType,
    MissingCategory,
    MissingDescription,
    ValidationFailed,
)
from models import Category, TransactionType

MAX_NOTE_LENGTH = 500
MAX_TAG_LENGTH = 20
MAX_BUDGET_NAME_LENGTH = 100
MAX_BUDGET_NOTES_LENGTH = 500
MAX_CATEGORY_NAME_LENGTH = 100
MAX_AMOUNT = Decimal("9999999999.99")


def to_cents(amount: Any) -> int:
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return cents / 100


def _positive_cents(
    amount: Any,
    error: type[ValidationFailed],
    message: Optional[str] = None,
    *,
    label: str = "Amount",
) -> int:
    if amount is None or isinstance(amount, bool):
        raise error(message)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise error(message) from exc
    if not value.is_finite() or value <= 0:
        raise error(message)
    # compared before quantizing; huge exponents overflow the decimal context
    if value > MAX_AMOUNT:
        raise error(f"{label} must not exceed {MAX_AMOUNT}")
    cents = to_cents(value)
    if cents <= 0:
        raise error(f"{label} must be at least 0.01")
    return cents


def check_transaction_type(value: Any) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise InvalidType() from exc


def check_transaction_amount(amount: Any) -> int:
    return _positive_cents(amount, InvalidAmount)


def check_note(note: Any) -> str:
    if not isinstance(note, str) or not note.strip():
        raise MissingDescription()
    note = note.strip()
    if len(note) > MAX_NOTE_LENGTH:
        raise DescriptionTooLong()
    return note


def check_transaction_category(
    txn_type: TransactionType,
    category_id: Optional[int],
    category: Optional[Category],
    user_id: str,
    *,
    allow_archived: bool = False,
) -> Optional[Category]:
    """Resolve the category a transaction points at.

    ``category`` is the row looked up for ``category_id`` (or ``None`` when the
    lookup found nothing). Transfers may omit the category entirely.
    """
    if category_id is None:
        if txn_type == TransactionType.transfer:
            return None
        raise MissingCategory()
    if category is None:
        raise CategoryNotFound()
    if category.user_id != user_id:
        raise CategoryOwnershipMismatch()
    if category.archived and not allow_archived:
        raise CategoryArchived()
    if txn_type != TransactionType.transfer and category.type.value != txn_type.value:
        raise CategoryTypeMismatch(
            f"Category type '{category.type.value}' does not match "
            f"transaction type '{txn_type.value}'"
        )
    return category


def check_tags(tags: Optional[Iterable[str]]) -> list[str]:
    cleaned: list[str] = []
    seen: set[str] = set()
    for raw in tags or []:
        tag = raw.strip() if isinstance(raw, str) else ""
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationFailed(
                f"Tags must be less than {MAX_TAG_LENGTH} characters"
            )
        key = tag.lower()
        if key in seen:
            continue
        seen.add(key)
        cleaned.append(tag)
    return cleaned


def check_category_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationFailed("Category name is required")
    name = name.strip()
    if len(name) > MAX_CATEGORY_NAME_LENGTH:
        raise ValidationFailed(
            f"Category name must be at most {MAX_CATEGORY_NAME_LENGTH} characters"
        )
    return name


def check_budget_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationFailed("Budget name is required")
    name = name.strip()
    if len(name) > MAX_BUDGET_NAME_LENGTH:
        raise ValidationFailed(
            f"Budget name must be less than {MAX_BUDGET_NAME_LENGTH} characters"
        )
    return name


def check_period(
    start_date: Optional[datetime], end_date: Optional[datetime]
) -> tuple[datetime, datetime]:
    if start_date is None or end_date is None:
        raise ValidationFailed("Budget period with start and end dates is required")
    if end_date <= start_date:
        raise InvalidPeriod()
    return start_date, end_date


def check_no_duplicate_categories(allocations: Optional[Sequence[Any]]) -> None:
    seen: set[int] = set()
    for entry in allocations or []:
        category_id = getattr(entry, "category_id", None)
        if category_id is None:
            continue
        if category_id in seen:
            raise DuplicateCategory()
        seen.add(category_id)


def check_allocations(
    allocations: Optional[Sequence[Any]],
) -> list[tuple[int, int, Optional[str]]]:
    """Return ``(category_id, allocated_cents, color)`` per entry, in input order."""
    if not allocations:
        raise EmptyCategories()
    resolved: list[tuple[int, int, Optional[str]]] = []
    for entry in allocations:
        category_id = getattr(entry, "category_id", None)
        allocated = getattr(entry, "allocated_amount", None)
        if category_id is None or allocated is None:
            raise InvalidAllocation()
        cents = _positive_cents(
            allocated,
            InvalidAllocation,
            "Allocated amount must be greater than 0",
            label="Allocated amount",
        )
        resolved.append((category_id, cents, getattr(entry, "color", None)))
    check_no_duplicate_categories(allocations)
    return resolved


def check_budget_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    if len(notes) > MAX_BUDGET_NOTES_LENGTH:
        raise ValidationFailed(
            f"Notes must be less than {MAX_BUDGET_NOTES_LENGTH} characters"
        )
    return notes


def check_threshold(threshold: int) -> int:
    if threshold < 0 or threshold > 100:
        raise ValidationFailed("Notification threshold must be between 0 and 100")
    return threshold
