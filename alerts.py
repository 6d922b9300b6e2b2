from dataclasses import dataclass
from typing import Optional, Sequence

from reconciliation import BudgetHealth, BudgetSnapshot, CategorySpend

CRITICAL = "critical"
WARNING = "warning"
OVERALL = "overall"


@dataclass(frozen=True)
class Alert:
    level: str
    message: str
    scope: str
    category_id: Optional[int] = None


def generate_alerts(
    budget: BudgetSnapshot, category_breakdown: Sequence[CategorySpend]
) -> list[Alert]:
    """Threshold alerts for one reconciled budget, overall first.

    Rows in ``warning`` or ``good`` health never alert.
    """
    alerts: list[Alert] = []

    overall = budget.utilization_percentage
    if overall >= 100:
        alerts.append(
            Alert(CRITICAL, f'Budget "{budget.name}" has been exceeded!', OVERALL)
        )
    elif overall >= 90:
        alerts.append(
            Alert(
                WARNING,
                f'Budget "{budget.name}" is at {overall:.1f}% utilization',
                OVERALL,
            )
        )

    for row in category_breakdown:
        if row.status == BudgetHealth.exceeded:
            alerts.append(
                Alert(
                    CRITICAL,
                    f'Category "{row.name}" has exceeded its budget',
                    row.name,
                    row.category_id,
                )
            )
        elif row.status == BudgetHealth.critical:
            alerts.append(
                Alert(
                    WARNING,
                    f'Category "{row.name}" is at {row.percentage:.1f}% utilization',
                    row.name,
                    row.category_id,
                )
            )
    return alerts
