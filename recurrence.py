from datetime import date, datetime, timedelta

from errors import ValidationFailed
from models import RecurrenceFrequency
from periods import days_in_month


def _add_months(base: datetime, months: int, *, desired_day: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    day = min(desired_day, dim)
    return datetime.combine(date(year, month, day), base.time())


def nth_occurrence(
    anchor: datetime, frequency: RecurrenceFrequency, interval: int, n: int
) -> datetime:
    """Return the ``n``-th repetition after ``anchor`` (``n=0`` is the anchor)."""
    step = interval * n
    if frequency == RecurrenceFrequency.daily:
        return anchor + timedelta(days=step)
    if frequency == RecurrenceFrequency.weekly:
        return anchor + timedelta(weeks=step)
    if frequency == RecurrenceFrequency.monthly:
        return _add_months(anchor, step, desired_day=anchor.day)
    return _add_months(anchor, 12 * step, desired_day=anchor.day)


def expand_occurrences(
    anchor: datetime,
    frequency: RecurrenceFrequency,
    interval: int,
    end_date: datetime,
    *,
    limit: int,
) -> list[datetime]:
    """List the repetitions after ``anchor`` up to and including ``end_date``.

    Months always step from the anchor, so a series starting on the 31st lands
    on each month's last day without drifting.
    """
    if interval < 1:
        raise ValidationFailed("Recurring interval must be at least 1")
    if end_date < anchor:
        raise ValidationFailed("Recurring end date must not be before the transaction date")

    occurrences: list[datetime] = []
    n = 1
    while True:
        moment = nth_occurrence(anchor, frequency, interval, n)
        if moment > end_date:
            break
        occurrences.append(moment)
        if len(occurrences) > limit:
            raise ValidationFailed(
                f"Recurring pattern produces more than {limit} occurrences"
            )
        n += 1
    return occurrences
