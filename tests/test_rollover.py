from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError
from models import BudgetAllocation, ExpenseStatus
from schemas import AllocationIn, BudgetIn, CategoryIn, ExpenseIn
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    run_auto_create_budgets,
    run_daily_rollover,
)

MARCH_1 = date(2025, 3, 1)
MARCH_2 = date(2025, 3, 2)


def _setup(session: Session, user_id: int = 1) -> int:
    food = CategoryService(session, user_id).create(CategoryIn(name="Food")).id
    BudgetService(session, user_id).create_budget(
        BudgetIn(
            year=2025,
            month=3,
            total_cents=50_000,
            allocations=[AllocationIn(category_id=food, allocated_cents=31_000)],
        ),
        today=MARCH_1,
    )
    return food


def _spend(
    session: Session,
    category_id: int,
    amount_cents: int,
    day: date = MARCH_1,
    status: ExpenseStatus = ExpenseStatus.confirmed,
    user_id: int = 1,
) -> None:
    ExpenseService(session, user_id).create(
        ExpenseIn(
            category_id=category_id,
            amount_cents=amount_cents,
            date=day,
            description="Lunch",
            status=status,
        )
    )


def _food(session: Session, category_id: int) -> BudgetAllocation:
    allocation = session.scalars(
        select(BudgetAllocation).where(BudgetAllocation.category_id == category_id)
    ).one()
    session.refresh(allocation)
    return allocation


def test_unspent_allowance_rolls_into_today() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _setup(session)
        _spend(session, food, 400)

        rolled = BudgetService(session, 1).process_daily_rollover(today=MARCH_2)

        allocation = _food(session, food)
        assert rolled == 1
        assert allocation.current_daily_limit_cents == 1_600
        # 30_600 left over 30 days
        assert allocation.daily_limit_cents == 1_020
        assert allocation.last_rollover_on == MARCH_2


def test_rollover_runs_once_per_day() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _setup(session)
        budgets = BudgetService(session, 1)

        assert budgets.process_daily_rollover(today=MARCH_2) == 1
        assert budgets.process_daily_rollover(today=MARCH_2) == 0
        assert _food(session, food).current_daily_limit_cents == 2_000


def test_rollover_only_counts_confirmed_spending() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _setup(session)
        _spend(session, food, 400, status=ExpenseStatus.pending)
        _spend(session, food, 300, day=MARCH_2)

        BudgetService(session, 1).process_daily_rollover(today=MARCH_2)
        assert _food(session, food).current_daily_limit_cents == 2_000


def test_overspent_day_carries_nothing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _setup(session)
        _spend(session, food, 1_500)

        BudgetService(session, 1).process_daily_rollover(today=MARCH_2)
        allocation = _food(session, food)
        assert allocation.current_daily_limit_cents == 1_000
        assert allocation.daily_limit_cents == (31_000 - 1_500) // 30


def test_rollover_without_budget_fails() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _setup(session)
        with pytest.raises(NotFoundError):
            BudgetService(session, 1).process_daily_rollover(today=date(2025, 4, 1))


def test_sweep_rolls_every_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        first = _setup(session, user_id=1)
        second = _setup(session, user_id=2)
        _spend(session, second, 1_000, user_id=2)

        assert run_daily_rollover(session, today=MARCH_2) == 2
        assert run_daily_rollover(session, today=MARCH_2) == 0
        assert _food(session, first).current_daily_limit_cents == 2_000
        assert _food(session, second).current_daily_limit_cents == 1_000


def test_reading_the_budget_refreshes_daily_limits() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = _setup(session)
        _spend(session, food, 1_000, day=date(2025, 3, 15))

        summary = BudgetService(session, 1).get_current_budget(today=date(2025, 3, 16))
        allocation = summary.allocations[0]
        assert summary.remaining_days == 16
        assert allocation.daily_limit_cents == 30_000 // 16
        assert allocation.current_daily_limit_cents == 1_000


def test_auto_create_copies_last_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _setup(session)

        assert run_auto_create_budgets(session, today=date(2025, 4, 1)) == 1
        assert run_auto_create_budgets(session, today=date(2025, 4, 1)) == 0

        april = BudgetService(session, 1).get_current_budget(today=date(2025, 4, 1))
        assert april.total_cents == 50_000
        assert april.allocations[0].daily_limit_cents == 31_000 // 30
        assert april.allocations[0].current_daily_limit_cents == 31_000 // 30
