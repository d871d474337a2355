from datetime import datetime
from typing import Optional

from models import BudgetAllocation


def calculate_daily_limit(remaining_cents: int, remaining_days: int) -> int:
    if remaining_days <= 0:
        return 0
    # floor so the daily limits of the rest of the month never add up to
    # more than what is left
    return max(0, remaining_cents // remaining_days)


def refresh_daily_limit(
    allocation: BudgetAllocation,
    remaining_days: int,
    *,
    now: Optional[datetime] = None,
) -> None:
    """Recompute the base daily limit of ``allocation``.

    ``current_daily_limit_cents`` is seeded only while it still holds its
    uninitialized value of 0; after that it belongs to the rollover and is
    never overwritten here, not even when the month has run out.
    """
    allocation.daily_limit_cents = calculate_daily_limit(
        allocation.remaining_cents, remaining_days
    )
    if allocation.current_daily_limit_cents == 0:
        allocation.current_daily_limit_cents = allocation.daily_limit_cents
    if now is not None:
        allocation.last_calculated_at = now


def apply_rollover(allocation: BudgetAllocation, yesterday_spent_cents: int) -> int:
    """Carry yesterday's unspent allowance into today's limit.

    Returns the amount carried over (0 when yesterday's spending reached or
    passed the limit). The accumulated limit is not capped; it only resets
    with the next month's budget.
    """
    unspent = allocation.current_daily_limit_cents - yesterday_spent_cents
    if unspent <= 0:
        return 0
    allocation.current_daily_limit_cents += unspent
    return unspent
