from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

NEAR_LIMIT_PERCENT = 90.0


class AlertType(str, Enum):
    over_budget = "over_budget"
    near_limit = "near_limit"
    threshold = "threshold"


class AlertSeverity(str, Enum):
    warning = "warning"
    danger = "danger"


@dataclass(frozen=True)
class AllocationAlert:
    allocation_id: int
    category_id: int
    category_name: str
    allocated_cents: int
    spent_cents: int
    progress_percent: float
    alert_type: AlertType
    severity: AlertSeverity
    message: str


def progress_percent(spent_cents: int, limit_cents: int) -> float:
    if limit_cents == 0:
        return 0.0
    return spent_cents / limit_cents * 100


def should_alert(spent_cents: int, allocated_cents: int, threshold: float) -> bool:
    if allocated_cents == 0:
        return False
    return spent_cents / allocated_cents >= threshold


def evaluate_allocation(
    *,
    allocation_id: int,
    category_id: int,
    category_name: str,
    allocated_cents: int,
    spent_cents: int,
    alert_threshold: float,
) -> Optional[AllocationAlert]:
    progress = progress_percent(spent_cents, allocated_cents)
    alerting = should_alert(spent_cents, allocated_cents, alert_threshold)
    if spent_cents > allocated_cents:
        alert_type = AlertType.over_budget
        severity = AlertSeverity.danger
        over = (spent_cents - allocated_cents) / 100
        message = f"Over budget in {category_name} by {over:.2f}"
    elif not alerting:
        return None
    elif progress >= NEAR_LIMIT_PERCENT:
        alert_type = AlertType.near_limit
        severity = AlertSeverity.danger
        message = f"Almost out of budget in {category_name}"
    else:
        alert_type = AlertType.threshold
        severity = AlertSeverity.warning
        message = f"{progress:.1f}% of the {category_name} budget spent"

    return AllocationAlert(
        allocation_id=allocation_id,
        category_id=category_id,
        category_name=category_name,
        allocated_cents=allocated_cents,
        spent_cents=spent_cents,
        progress_percent=progress,
        alert_type=alert_type,
        severity=severity,
        message=message,
    )
