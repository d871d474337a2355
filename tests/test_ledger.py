from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from alerts import AlertType
from database import Base, create_db_engine
from errors import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from models import Budget, BudgetAllocation, Expense, ExpenseSource, ExpenseStatus
from schemas import AllocationIn, BudgetIn, CategoryIn, ExpenseIn, ExpenseUpdateIn
from services import BudgetService, CategoryService, ExpenseService

USER_ID = 1
TODAY = date(2025, 3, 10)


def _setup(session: Session) -> dict[str, int]:
    categories = CategoryService(session, USER_ID)
    ids = {
        name: categories.create(CategoryIn(name=name)).id
        for name in ("Food", "Transport", "Fun")
    }
    BudgetService(session, USER_ID).create_budget(
        BudgetIn(
            year=2025,
            month=3,
            total_cents=100_000,
            allocations=[
                AllocationIn(category_id=ids["Food"], allocated_cents=30_000),
                AllocationIn(category_id=ids["Transport"], allocated_cents=20_000),
            ],
        ),
        today=TODAY,
    )
    return ids


def _expense(category_id: int, amount_cents: int, day: date = TODAY, **extra) -> ExpenseIn:
    return ExpenseIn(
        category_id=category_id,
        amount_cents=amount_cents,
        date=day,
        description="Expense",
        **extra,
    )


def _allocation(session: Session, category_id: int) -> BudgetAllocation:
    return session.scalars(
        select(BudgetAllocation).where(BudgetAllocation.category_id == category_id)
    ).one()


def _assert_ledger_consistent(session: Session) -> None:
    for budget in session.scalars(select(Budget)):
        session.refresh(budget)
        for allocation in budget.allocations:
            session.refresh(allocation)
            assert (
                allocation.remaining_cents
                == allocation.allocated_cents - allocation.spent_cents
            )
            assert allocation.is_over_budget == (
                allocation.spent_cents > allocation.allocated_cents
            )
        assert budget.spent_cents == sum(a.spent_cents for a in budget.allocations)
        assert budget.remaining_cents == budget.total_cents - budget.spent_cents


def test_spending_the_whole_allocation_is_not_over_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        for _ in range(3):
            created = expenses.create(_expense(ids["Food"], 10_000))

        food = _allocation(session, ids["Food"])
        assert food.spent_cents == 30_000
        assert food.remaining_cents == 0
        assert food.is_over_budget is False
        assert created.alert.alert_type == AlertType.near_limit
        assert created.alert.progress_percent == 100.0

        summary = BudgetService(session, USER_ID).get_current_budget(today=TODAY)
        food_summary = next(a for a in summary.allocations if a.category_id == ids["Food"])
        assert food_summary.progress_percent == 100.0
        assert food_summary.should_alert is True
        assert summary.spent_cents == 30_000
        _assert_ledger_consistent(session)


def test_one_more_expense_goes_over_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        for _ in range(3):
            expenses.create(_expense(ids["Food"], 10_000))
        created = expenses.create(_expense(ids["Food"], 5_000))

        food = _allocation(session, ids["Food"])
        assert food.spent_cents == 35_000
        assert food.remaining_cents == -5_000
        assert food.is_over_budget is True
        assert created.alert.alert_type == AlertType.over_budget

        summary = BudgetService(session, USER_ID).get_current_budget(today=TODAY)
        assert summary.spent_cents == 35_000
        assert summary.remaining_cents == 65_000
        _assert_ledger_consistent(session)


def test_recompute_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        expenses.create(_expense(ids["Food"], 1_234))
        expenses.create(_expense(ids["Transport"], 4_321))
        expenses.create(
            _expense(ids["Transport"], 1_000, status=ExpenseStatus.pending)
        )

        budgets = BudgetService(session, USER_ID)
        budget_id = session.scalars(select(Budget.id)).one()
        first = budgets.recompute(budget_id, today=TODAY)
        second = budgets.recompute(budget_id, today=TODAY)

        assert first == second
        assert first.spent_cents == 6_555
        _assert_ledger_consistent(session)


def test_cancel_and_delete_release_the_amount() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        keep = expenses.create(_expense(ids["Food"], 2_000))
        cancelled = expenses.create(_expense(ids["Food"], 3_000))
        deleted = expenses.create(_expense(ids["Food"], 4_000))

        summary = expenses.cancel(cancelled.id)
        assert summary.status == ExpenseStatus.cancelled
        assert summary.can_be_modified is False
        expenses.delete(deleted.id)

        assert _allocation(session, ids["Food"]).spent_cents == keep.amount_cents
        with pytest.raises(NotFoundError):
            expenses.get(deleted.id)
        with pytest.raises(ConflictError) as exc:
            expenses.update(cancelled.id, ExpenseUpdateIn(amount_cents=1))
        assert exc.value.code == ErrorCode.expense_not_modifiable
        _assert_ledger_consistent(session)


def test_pending_expenses_count_until_cancelled() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        pending = expenses.create(
            _expense(ids["Food"], 2_500, status=ExpenseStatus.pending)
        )
        assert _allocation(session, ids["Food"]).spent_cents == 2_500

        confirmed = expenses.confirm(pending.id)
        assert confirmed.status == ExpenseStatus.confirmed
        assert _allocation(session, ids["Food"]).spent_cents == 2_500

        with pytest.raises(ConflictError):
            expenses.confirm(pending.id)


def test_moving_an_expense_recomputes_both_allocations() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        created = expenses.create(_expense(ids["Food"], 7_500))

        moved = expenses.update(
            created.id,
            ExpenseUpdateIn(category_id=ids["Transport"], amount_cents=8_000),
        )

        assert moved.category_id == ids["Transport"]
        assert moved.allocation_id == _allocation(session, ids["Transport"]).id
        assert _allocation(session, ids["Food"]).spent_cents == 0
        assert _allocation(session, ids["Transport"]).spent_cents == 8_000
        _assert_ledger_consistent(session)


def test_moving_an_expense_to_another_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        budgets = BudgetService(session, USER_ID)
        april = budgets.create_budget(
            BudgetIn(
                year=2025,
                month=4,
                total_cents=50_000,
                allocations=[AllocationIn(category_id=ids["Food"], allocated_cents=10_000)],
            ),
            today=TODAY,
        )
        expenses = ExpenseService(session, USER_ID)
        created = expenses.create(_expense(ids["Food"], 3_000))

        moved = expenses.update(created.id, ExpenseUpdateIn(date=date(2025, 4, 2)))

        assert moved.budget_id == april.id
        march = budgets.get_budget_by_month(2025, 3, today=TODAY)
        assert march.spent_cents == 0
        assert budgets.get_budget_by_month(2025, 4, today=TODAY).spent_cents == 3_000
        _assert_ledger_consistent(session)


def test_expense_outside_any_budget_falls_back_to_current_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        created = ExpenseService(session, USER_ID).create(
            _expense(ids["Food"], 1_000, day=date(2025, 2, 27)), today=TODAY
        )
        march = BudgetService(session, USER_ID).get_budget_by_month(2025, 3, today=TODAY)
        assert created.budget_id == march.id
        assert march.spent_cents == 1_000


def test_expense_errors() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)

        with pytest.raises(ValidationError) as exc:
            expenses.create(_expense(ids["Food"], 0))
        assert exc.value.code == ErrorCode.invalid_amount

        with pytest.raises(NotFoundError) as exc:
            expenses.create(_expense(ids["Fun"], 1_000))
        assert exc.value.code == ErrorCode.category_not_allocated

        with pytest.raises(PermissionDeniedError):
            ExpenseService(session, 2).create(
                ExpenseIn(
                    category_id=ids["Food"],
                    amount_cents=1_000,
                    date=TODAY,
                    description="x",
                )
            )

        stranger = CategoryService(session, 2).create(CategoryIn(name="Food"))
        with pytest.raises(NotFoundError) as exc:
            ExpenseService(session, 2).create(_expense(stranger.id, 1_000))
        assert exc.value.code == ErrorCode.budget_not_found

        mine = expenses.create(_expense(ids["Food"], 500))
        with pytest.raises(PermissionDeniedError):
            ExpenseService(session, 2).get(mine.id)
        assert _allocation(session, ids["Food"]).spent_cents == 500


def test_confirmed_automatic_expense_is_locked() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        created = expenses.create(
            _expense(ids["Food"], 1_000, source=ExpenseSource.bank_api)
        )
        assert created.can_be_modified is False
        with pytest.raises(ConflictError):
            expenses.update(created.id, ExpenseUpdateIn(description="Edited"))

        listed = expenses.list_for_period(date(2025, 3, 1), date(2025, 3, 31))
        assert [e.id for e in listed] == [created.id]


def test_cancelled_expense_cannot_be_deleted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        created = expenses.create(_expense(ids["Food"], 1_000), today=TODAY)
        expenses.cancel(created.id)

        with pytest.raises(ConflictError) as exc:
            expenses.delete(created.id)
        assert exc.value.code == ErrorCode.expense_not_modifiable
        assert expenses.get(created.id).status == ExpenseStatus.cancelled
        assert _allocation(session, ids["Food"]).spent_cents == 0

        kept = expenses.create(_expense(ids["Food"], 400), today=TODAY)
        expenses.delete(kept.id)
        with pytest.raises(NotFoundError):
            expenses.get(kept.id)
        _assert_ledger_consistent(session)


def test_list_for_period_pages_newest_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        created = [
            expenses.create(_expense(ids["Food"], 100, date(2025, 3, day)), today=TODAY)
            for day in (2, 4, 6, 8, 10)
        ]
        newest_first = [e.id for e in reversed(created)]

        first = expenses.list_for_period(
            date(2025, 3, 1), date(2025, 3, 31), limit=2
        )
        second = expenses.list_for_period(
            date(2025, 3, 1), date(2025, 3, 31), limit=2, offset=2
        )
        tail = expenses.list_for_period(date(2025, 3, 1), date(2025, 3, 31), offset=4)
        assert [e.id for e in first] == newest_first[:2]
        assert [e.id for e in second] == newest_first[2:4]
        assert [e.id for e in tail] == newest_first[4:]

        with pytest.raises(ValueError):
            expenses.list_for_period(date(2025, 3, 1), date(2025, 3, 31), offset=-1)


def test_recent_expenses_include_every_status() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        oldest = expenses.create(_expense(ids["Food"], 100, date(2025, 3, 5)), today=TODAY)
        cancelled = expenses.create(
            _expense(ids["Transport"], 200, date(2025, 3, 8)), today=TODAY
        )
        expenses.cancel(cancelled.id)
        first_today = expenses.create(_expense(ids["Food"], 300), today=TODAY)
        second_today = expenses.create(
            _expense(ids["Food"], 400, status=ExpenseStatus.pending), today=TODAY
        )

        stranger = CategoryService(session, 2).create(CategoryIn(name="Food"))
        assert ExpenseService(session, 2).recent() == []
        assert stranger.id not in {e.category_id for e in expenses.recent()}

        recent = expenses.recent(limit=3)
        assert [e.id for e in recent] == [second_today.id, first_today.id, cancelled.id]
        assert [e.id for e in expenses.recent(limit=10)][-1] == oldest.id
        assert expenses.recent(limit=0) == []


def test_totals_by_category_counts_confirmed_spending_in_period() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        expenses = ExpenseService(session, USER_ID)
        expenses.create(_expense(ids["Food"], 1_000), today=TODAY)
        expenses.create(_expense(ids["Food"], 500), today=TODAY)
        expenses.create(_expense(ids["Transport"], 700, date(2025, 3, 9)), today=TODAY)
        expenses.create(
            _expense(ids["Food"], 300, status=ExpenseStatus.pending), today=TODAY
        )
        dropped = expenses.create(
            _expense(ids["Transport"], 900, date(2025, 3, 9)), today=TODAY
        )
        expenses.cancel(dropped.id)

        month = expenses.totals_by_category(today=TODAY)
        assert (month.period, month.year, month.month) == ("month", 2025, 3)
        assert (month.start, month.end) == (date(2025, 3, 1), TODAY)
        assert [(c.category_name, c.total_cents, c.count) for c in month.categories] == [
            ("Food", 1_500, 2),
            ("Transport", 700, 1),
        ]
        assert month.total_spent_cents == 2_200

        today = expenses.totals_by_category("today", today=TODAY)
        assert [c.category_id for c in today.categories] == [ids["Food"]]
        assert today.total_spent_cents == 1_500

        yesterday = expenses.totals_by_category("yesterday", today=TODAY)
        assert yesterday.start == yesterday.end == date(2025, 3, 9)
        assert [c.category_id for c in yesterday.categories] == [ids["Transport"]]
        assert yesterday.total_spent_cents == 700

        empty = ExpenseService(session, 2).totals_by_category(today=TODAY)
        assert empty.categories == []
        assert empty.total_spent_cents == 0

        with pytest.raises(ValueError):
            expenses.totals_by_category("fortnight", today=TODAY)


def test_concurrent_expense_creation_never_loses_updates(tmp_path) -> None:
    engine = create_db_engine(f"sqlite:///{tmp_path}/ledger.db")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
    food_id = ids["Food"]

    def writer(_: int) -> list[object]:
        outcomes: list[object] = []
        with Session(engine) as session:
            expenses = ExpenseService(session, USER_ID)
            for _ in range(10):
                try:
                    expenses.create(_expense(food_id, 100), today=TODAY)
                except ConflictError as exc:
                    outcomes.append(exc.code)
                else:
                    outcomes.append("ok")
        return outcomes

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = [o for batch in pool.map(writer, range(6)) for o in batch]

    successes = outcomes.count("ok")
    assert len(outcomes) == 60
    assert successes >= 1
    assert all(o == ErrorCode.concurrent_update for o in outcomes if o != "ok")

    with Session(engine) as session:
        total = session.scalar(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.allocation_id == _allocation(session, food_id).id
            )
        )
        allocation = _allocation(session, food_id)
        budget = session.scalars(select(Budget)).one()
        assert total == successes * 100
        assert allocation.spent_cents == total
        assert budget.spent_cents == allocation.spent_cents
        _assert_ledger_consistent(session)
    engine.dispose()
