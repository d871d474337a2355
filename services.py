import logging
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Iterable, Iterator, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from alerts import AllocationAlert, evaluate_allocation, progress_percent, should_alert
from classification import (
    extract_fields,
    has_extractors,
    normalize_keywords,
    score_extraction,
    select_candidates,
    validate_regexes,
)
from config import get_settings
from daily_limits import apply_rollover, refresh_daily_limit
from errors import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from models import (
    COUNTED_EXPENSE_STATUSES,
    BankAccount,
    Budget,
    BudgetAllocation,
    Category,
    Expense,
    ExpenseSource,
    ExpenseStatus,
    NotificationChannel,
    NotificationPattern,
    PatternStatus,
    utcnow,
)
from parsing import clean_text, parse_amount, parse_date
from periods import (
    days_in_month,
    is_current_month,
    local_now,
    local_today,
    next_month,
    remaining_days,
    resolve_period,
)
from schemas import (
    AllocationSummary,
    AllocationUpdateIn,
    BankAccountIn,
    BudgetIn,
    BudgetSummary,
    BudgetUpdateIn,
    CategoryIn,
    CategoryTotal,
    CategoryTotals,
    Dashboard,
    ExpenseIn,
    ExpenseSummary,
    ExpenseUpdateIn,
    NotificationIn,
    NotificationIngestResult,
    NotificationPatternIn,
    NotificationPatternUpdateIn,
    PatternStatistics,
    PatternSummary,
    ProcessedNotification,
    QuickStats,
)

logger = logging.getLogger(__name__)

ON_TRACK_PERCENT = 80.0

_PATTERN_TRANSITIONS = {
    PatternStatus.active: {PatternStatus.inactive, PatternStatus.learning},
    PatternStatus.inactive: {PatternStatus.active},
    PatternStatus.learning: {PatternStatus.active},
}
_REGEX_FIELDS = ("amount_regex", "date_regex", "description_regex", "merchant_regex")


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error.

    A lost update caught by a version counter is raised as
    ``ConflictError(concurrent_update)``.
    """
    try:
        yield session
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError(
            ErrorCode.concurrent_update, "Budget was modified concurrently"
        ) from exc
    except Exception:
        session.rollback()
        raise


def _lock_budget(session: Session, budget_id: int) -> Optional[Budget]:
    stmt = (
        select(Budget)
        .where(Budget.id == budget_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.scalars(stmt).first()


def _lock_allocations(
    session: Session, allocation_ids: Iterable[int]
) -> dict[int, BudgetAllocation]:
    ids = sorted(set(allocation_ids))
    if not ids:
        return {}
    stmt = (
        select(BudgetAllocation)
        .where(BudgetAllocation.id.in_(ids))
        .order_by(BudgetAllocation.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {allocation.id: allocation for allocation in session.scalars(stmt)}


def _lock_budget_allocations(
    session: Session, budget_id: int
) -> list[BudgetAllocation]:
    stmt = (
        select(BudgetAllocation)
        .where(BudgetAllocation.budget_id == budget_id)
        .order_by(BudgetAllocation.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(session.scalars(stmt))


def recompute_allocation(
    session: Session, allocation: BudgetAllocation
) -> BudgetAllocation:
    """Resum the allocation's pending and confirmed expenses from scratch."""
    session.flush()
    spent = session.scalar(
        select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            Expense.allocation_id == allocation.id,
            Expense.status.in_(COUNTED_EXPENSE_STATUSES),
        )
    )
    allocation.spent_cents = int(spent or 0)
    allocation.remaining_cents = allocation.allocated_cents - allocation.spent_cents
    allocation.is_over_budget = allocation.spent_cents > allocation.allocated_cents
    return allocation


def recompute_budget(session: Session, budget: Budget) -> Budget:
    session.flush()
    spent = session.scalar(
        select(func.coalesce(func.sum(BudgetAllocation.spent_cents), 0)).where(
            BudgetAllocation.budget_id == budget.id
        )
    )
    budget.spent_cents = int(spent or 0)
    budget.remaining_cents = budget.total_cents - budget.spent_cents
    return budget


def allocation_alert(allocation: BudgetAllocation) -> Optional[AllocationAlert]:
    return evaluate_allocation(
        allocation_id=allocation.id,
        category_id=allocation.category_id,
        category_name=allocation.category.name,
        allocated_cents=allocation.allocated_cents,
        spent_cents=allocation.spent_cents,
        alert_threshold=allocation.alert_threshold,
    )


def allocation_summary(
    allocation: BudgetAllocation, total_cents: int
) -> AllocationSummary:
    return AllocationSummary(
        id=allocation.id,
        category_id=allocation.category_id,
        category_name=allocation.category.name,
        allocated_cents=allocation.allocated_cents,
        spent_cents=allocation.spent_cents,
        remaining_cents=allocation.remaining_cents,
        progress_percent=progress_percent(
            allocation.spent_cents, allocation.allocated_cents
        ),
        daily_limit_cents=allocation.daily_limit_cents,
        current_daily_limit_cents=allocation.current_daily_limit_cents,
        alert_threshold=allocation.alert_threshold,
        is_over_budget=allocation.is_over_budget,
        should_alert=should_alert(
            allocation.spent_cents,
            allocation.allocated_cents,
            allocation.alert_threshold,
        ),
        allocation_percent=progress_percent(allocation.allocated_cents, total_cents),
    )


def budget_summary(budget: Budget, *, today: Optional[date] = None) -> BudgetSummary:
    today = today or local_today()
    return BudgetSummary(
        id=budget.id,
        year=budget.year,
        month=budget.month,
        total_cents=budget.total_cents,
        spent_cents=budget.spent_cents,
        remaining_cents=budget.remaining_cents,
        progress_percent=progress_percent(budget.spent_cents, budget.total_cents),
        remaining_days=remaining_days(budget.year, budget.month, today),
        is_active=budget.is_active,
        is_current_month=is_current_month(budget.year, budget.month, today),
        auto_create_next=budget.auto_create_next,
        allocations=[
            allocation_summary(allocation, budget.total_cents)
            for allocation in budget.allocations
        ],
    )


def expense_summary(
    expense: Expense, *, alert: Optional[AllocationAlert] = None
) -> ExpenseSummary:
    return ExpenseSummary(
        id=expense.id,
        budget_id=expense.budget_id,
        allocation_id=expense.allocation_id,
        category_id=expense.category_id,
        category_name=expense.category.name,
        amount_cents=expense.amount_cents,
        description=expense.description,
        date=expense.date,
        status=expense.status,
        source=expense.source,
        merchant=expense.merchant,
        tags=list(expense.tags or []),
        confidence=expense.confidence,
        pattern_id=expense.pattern_id,
        can_be_modified=expense.can_be_modified,
        alert=alert,
    )


def pattern_summary(pattern: NotificationPattern) -> PatternSummary:
    return PatternSummary(
        id=pattern.id,
        bank_account_id=pattern.bank_account_id,
        name=pattern.display_name,
        channel=pattern.channel,
        status=pattern.status,
        priority=pattern.priority,
        is_default=pattern.is_default,
        match_count=pattern.match_count,
        success_count=pattern.success_count,
        success_rate=pattern.success_rate,
    )


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = select(Category).where(
            or_(Category.user_id.is_(None), Category.user_id == self.user_id)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return list(self.session.scalars(stmt.order_by(Category.name)))

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if category is None:
            raise NotFoundError(ErrorCode.category_not_found, "Category not found")
        if not category.usable_by(self.user_id):
            raise PermissionDeniedError("Category belongs to another user")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Category).where(
                or_(Category.user_id.is_(None), Category.user_id == self.user_id),
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing is not None:
            raise ConflictError(ErrorCode.category_exists, "Category already exists")
        category = Category(user_id=self.user_id, name=name)
        with atomic(self.session):
            self.session.add(category)
        self.session.refresh(category)
        return category

    def archive(self, category_id: int) -> Category:
        category = self.get(category_id)
        if category.user_id is None:
            raise PermissionDeniedError("System categories cannot be archived")
        with atomic(self.session):
            category.archived_at = utcnow()
        return category


class BankAccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[BankAccount]:
        stmt = (
            select(BankAccount)
            .where(BankAccount.user_id == self.user_id)
            .order_by(BankAccount.bank_name, BankAccount.id)
        )
        return list(self.session.scalars(stmt))

    def get(self, bank_account_id: int) -> BankAccount:
        account = self.session.get(BankAccount, bank_account_id)
        if account is None:
            raise NotFoundError(
                ErrorCode.bank_account_not_found, "Bank account not found"
            )
        if account.user_id != self.user_id:
            raise PermissionDeniedError("Bank account belongs to another user")
        return account

    def create(self, data: BankAccountIn) -> BankAccount:
        account = BankAccount(
            user_id=self.user_id,
            bank_name=data.bank_name.strip(),
            account_alias=data.account_alias.strip(),
            account_number_mask=data.account_number_mask.strip(),
            is_active=True,
            is_notification_enabled=data.is_notification_enabled,
        )
        with atomic(self.session):
            self.session.add(account)
        self.session.refresh(account)
        return account

    def set_notifications_enabled(
        self, bank_account_id: int, enabled: bool
    ) -> BankAccount:
        account = self.get(bank_account_id)
        with atomic(self.session):
            account.is_notification_enabled = enabled
        return account


class NotificationPatternService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.accounts = BankAccountService(session, user_id)

    def list_all(self) -> list[NotificationPattern]:
        stmt = (
            select(NotificationPattern)
            .where(NotificationPattern.user_id == self.user_id)
            .order_by(NotificationPattern.priority.asc(), NotificationPattern.id.asc())
        )
        return list(self.session.scalars(stmt))

    def list_for_bank_account(
        self, bank_account_id: int, active_only: bool = False
    ) -> list[NotificationPattern]:
        self.accounts.get(bank_account_id)
        stmt = select(NotificationPattern).where(
            NotificationPattern.bank_account_id == bank_account_id
        )
        if active_only:
            stmt = stmt.where(NotificationPattern.status == PatternStatus.active)
        stmt = stmt.order_by(
            NotificationPattern.priority.asc(), NotificationPattern.id.asc()
        )
        return list(self.session.scalars(stmt))

    def get(self, pattern_id: int) -> NotificationPattern:
        pattern = self.session.get(NotificationPattern, pattern_id)
        if pattern is None:
            raise NotFoundError(ErrorCode.pattern_not_found, "Pattern not found")
        if pattern.user_id != self.user_id:
            raise PermissionDeniedError("Pattern belongs to another user")
        return pattern

    def create(self, data: NotificationPatternIn) -> NotificationPattern:
        self.accounts.get(data.bank_account_id)
        regexes = {name: getattr(data, name) or None for name in _REGEX_FIELDS}
        validate_regexes(regexes)

        pattern = NotificationPattern(
            user_id=self.user_id,
            bank_account_id=data.bank_account_id,
            name=data.name.strip(),
            description=clean_text(data.description, max_length=500),
            channel=data.channel,
            status=PatternStatus.active,
            message_pattern=data.message_pattern,
            example_message=data.example_message,
            keywords_trigger=normalize_keywords(data.keywords_trigger),
            keywords_exclude=normalize_keywords(data.keywords_exclude),
            requires_validation=data.requires_validation,
            confidence_threshold=data.confidence_threshold,
            auto_approve=data.auto_approve,
            match_count=0,
            success_count=0,
            priority=data.priority,
            is_default=data.is_default,
            tags=normalize_keywords(data.tags),
            extra_metadata=dict(data.metadata),
            **regexes,
        )
        with atomic(self.session):
            self.session.add(pattern)
            self._flush_default_guard()
        self.session.refresh(pattern)
        logger.info(
            f"pattern_created: user_id={self.user_id} pattern_id={pattern.id} "
            f"bank_account_id={pattern.bank_account_id} channel={pattern.channel.value}"
        )
        return pattern

    def update(
        self, pattern_id: int, data: NotificationPatternUpdateIn
    ) -> NotificationPattern:
        pattern = self.get(pattern_id)
        provided = data.model_dump(exclude_unset=True)

        regexes = {
            name: provided[name] or None for name in _REGEX_FIELDS if name in provided
        }
        validate_regexes(regexes)

        with atomic(self.session):
            for name, value in regexes.items():
                setattr(pattern, name, value)
            if provided.get("name") is not None:
                pattern.name = provided["name"].strip()
            if "description" in provided:
                pattern.description = clean_text(provided["description"], max_length=500)
            for name in ("message_pattern", "example_message"):
                if name in provided:
                    setattr(pattern, name, provided[name])
            for name in ("keywords_trigger", "keywords_exclude", "tags"):
                if provided.get(name) is not None:
                    setattr(pattern, name, normalize_keywords(provided[name]))
            for name in (
                "requires_validation",
                "confidence_threshold",
                "auto_approve",
                "priority",
                "is_default",
            ):
                if provided.get(name) is not None:
                    setattr(pattern, name, provided[name])
            if provided.get("metadata") is not None:
                pattern.extra_metadata = dict(provided["metadata"])
            self._flush_default_guard()
        return pattern

    def delete(self, pattern_id: int) -> None:
        pattern = self.get(pattern_id)
        with atomic(self.session):
            self.session.execute(
                update(Expense)
                .where(Expense.pattern_id == pattern.id)
                .values(pattern_id=None)
            )
            self.session.delete(pattern)
        logger.info(f"pattern_deleted: user_id={self.user_id} pattern_id={pattern_id}")

    def set_status(
        self, pattern_id: int, status: PatternStatus
    ) -> NotificationPattern:
        pattern = self.get(pattern_id)
        if pattern.status == status:
            return pattern
        if status not in _PATTERN_TRANSITIONS[pattern.status]:
            raise ConflictError(
                ErrorCode.invalid_status_transition,
                f"Cannot move a pattern from {pattern.status.value} to {status.value}",
            )
        with atomic(self.session):
            pattern.status = status
        return pattern

    def _flush_default_guard(self) -> None:
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                ErrorCode.default_pattern_exists,
                "A default pattern already exists for this account and channel",
            ) from exc

    def match(
        self, bank_account_id: int, channel: NotificationChannel, message: str
    ) -> list[NotificationPattern]:
        """Candidate patterns for ``message``, best first.

        Falls back to the account's default pattern for the channel when no
        pattern accepts the message. A blank message matches nothing.
        """
        self.accounts.get(bank_account_id)
        if not message or not message.strip():
            return []

        stmt = select(NotificationPattern).where(
            NotificationPattern.bank_account_id == bank_account_id,
            NotificationPattern.channel == channel,
            NotificationPattern.status == PatternStatus.active,
        )
        patterns = list(self.session.scalars(stmt))
        candidates = select_candidates(patterns, message)
        if candidates:
            return candidates

        default = next((p for p in patterns if p.is_default), None)
        return [default] if default is not None else []

    def process_notification(
        self, bank_account_id: int, channel: NotificationChannel, message: str
    ) -> ProcessedNotification:
        candidates = self.match(bank_account_id, channel, message)
        if not candidates:
            logger.info(
                f"notification_unmatched: user_id={self.user_id} "
                f"bank_account_id={bank_account_id} channel={channel.value}"
            )
            return ProcessedNotification(
                bank_account_id=bank_account_id,
                channel=channel,
                message=message,
                processed=False,
            )

        pattern = candidates[0]
        extraction = extract_fields(pattern, message)
        score = score_extraction(pattern, extraction)
        logger.info(
            f"notification_matched: user_id={self.user_id} pattern_id={pattern.id} "
            f"candidates={len(candidates)} confidence={score.confidence:.2f} "
            f"auto_approve={score.auto_approve}"
        )
        return ProcessedNotification(
            bank_account_id=bank_account_id,
            channel=channel,
            message=message,
            processed=True,
            pattern_id=pattern.id,
            pattern_name=pattern.display_name,
            confidence=score.confidence,
            auto_approve=score.auto_approve,
            requires_validation=score.requires_validation,
            extracted_data=dict(extraction.fields),
        )

    def record_pattern_outcome(
        self, pattern_id: int, success: bool
    ) -> NotificationPattern:
        """Count one use of the pattern; ``success`` marks a confirmed extraction."""
        pattern = self.get(pattern_id)
        with atomic(self.session):
            self.session.execute(
                update(NotificationPattern)
                .where(NotificationPattern.id == pattern.id)
                .values(
                    match_count=NotificationPattern.match_count + 1,
                    success_count=NotificationPattern.success_count
                    + (1 if success else 0),
                    last_matched_at=utcnow(),
                )
            )
        self.session.refresh(pattern)
        return pattern

    def summaries(self) -> list[PatternSummary]:
        return [pattern_summary(p) for p in self.list_all()]

    def statistics(self) -> PatternStatistics:
        patterns = self.list_all()
        by_status = {status: 0 for status in PatternStatus}
        for pattern in patterns:
            by_status[pattern.status] += 1
        total_matches = sum(p.match_count for p in patterns)
        total_successes = sum(p.success_count for p in patterns)
        overall = total_successes / total_matches * 100 if total_matches else 0.0
        return PatternStatistics(
            total_patterns=len(patterns),
            active_patterns=by_status[PatternStatus.active],
            inactive_patterns=by_status[PatternStatus.inactive],
            learning_patterns=by_status[PatternStatus.learning],
            total_matches=total_matches,
            total_successes=total_successes,
            overall_success_rate=overall,
            patterns_without_extractors=[
                p.id for p in patterns if not has_extractors(p)
            ],
        )


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.categories = CategoryService(session, user_id)

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if expense is None:
            raise NotFoundError(ErrorCode.expense_not_found, "Expense not found")
        if expense.user_id != self.user_id:
            raise PermissionDeniedError("Expense belongs to another user")
        return expense

    def list_for_period(
        self,
        start: date,
        end: date,
        *,
        category_id: Optional[int] = None,
        include_cancelled: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[ExpenseSummary]:
        if offset < 0 or (limit is not None and limit < 0):
            raise ValueError("limit and offset must be non-negative")
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == self.user_id,
                Expense.date >= start,
                Expense.date <= end,
            )
        )
        if category_id is not None:
            stmt = stmt.where(Expense.category_id == category_id)
        if not include_cancelled:
            stmt = stmt.where(Expense.status != ExpenseStatus.cancelled)
        stmt = stmt.order_by(Expense.date.desc(), Expense.id.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [expense_summary(e) for e in self.session.scalars(stmt)]

    def recent(self, limit: int = 10) -> list[ExpenseSummary]:
        """Latest expenses of any status, newest date first."""
        if limit < 0:
            raise ValueError("limit must be non-negative")
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == self.user_id)
            .order_by(
                Expense.date.desc(), Expense.created_at.desc(), Expense.id.desc()
            )
            .limit(limit)
        )
        return [expense_summary(e) for e in self.session.scalars(stmt)]

    def totals_by_category(
        self, period: Optional[str] = None, *, today: Optional[date] = None
    ) -> CategoryTotals:
        """Confirmed spending per category over ``period`` (default: month)."""
        window = resolve_period(period, today=today)
        total = func.coalesce(func.sum(Expense.amount_cents), 0)
        stmt = (
            select(Category.id, Category.name, total, func.count(Expense.id))
            .join(Expense, Expense.category_id == Category.id)
            .where(
                Expense.user_id == self.user_id,
                Expense.status == ExpenseStatus.confirmed,
                Expense.date >= window.start,
                Expense.date <= window.end,
            )
            .group_by(Category.id, Category.name)
            .order_by(total.desc(), Category.name)
        )
        categories = [
            CategoryTotal(
                category_id=category_id,
                category_name=name,
                total_cents=int(cents),
                count=count,
            )
            for category_id, name, cents, count in self.session.execute(stmt)
        ]
        return CategoryTotals(
            period=window.slug,
            start=window.start,
            end=window.end,
            year=window.end.year,
            month=window.end.month,
            categories=categories,
            total_spent_cents=sum(c.total_cents for c in categories),
        )

    def _resolve_budget_id(self, day: date, today: Optional[date]) -> int:
        budget_id = self.session.scalar(
            select(Budget.id).where(
                Budget.user_id == self.user_id,
                Budget.year == day.year,
                Budget.month == day.month,
            )
        )
        if budget_id is not None:
            return budget_id

        today = today or local_today()
        # fall back to the current budget, then the most recent active one
        budget_id = self.session.scalar(
            select(Budget.id)
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .order_by(
                (
                    (Budget.year == today.year) & (Budget.month == today.month)
                ).desc(),
                Budget.year.desc(),
                Budget.month.desc(),
            )
            .limit(1)
        )
        if budget_id is None:
            raise NotFoundError(
                ErrorCode.budget_not_found, f"No budget for {day:%Y-%m}"
            )
        return budget_id

    def _allocation_id_for(self, budget_id: int, category_id: int) -> int:
        allocation_id = self.session.scalar(
            select(BudgetAllocation.id).where(
                BudgetAllocation.budget_id == budget_id,
                BudgetAllocation.category_id == category_id,
            )
        )
        if allocation_id is None:
            raise NotFoundError(
                ErrorCode.category_not_allocated,
                "Category has no allocation in this budget",
            )
        return allocation_id

    def _lock(
        self, budget_ids: Iterable[int], allocation_ids: Iterable[int]
    ) -> tuple[dict[int, Budget], dict[int, BudgetAllocation]]:
        budgets: dict[int, Budget] = {}
        for budget_id in sorted(set(budget_ids)):
            budget = _lock_budget(self.session, budget_id)
            if budget is None:
                raise NotFoundError(ErrorCode.budget_not_found, "Budget not found")
            budgets[budget_id] = budget
        allocations = _lock_allocations(self.session, allocation_ids)
        return budgets, allocations

    def _recompute(
        self,
        budgets: dict[int, Budget],
        allocations: dict[int, BudgetAllocation],
    ) -> None:
        for allocation in allocations.values():
            recompute_allocation(self.session, allocation)
        for budget in budgets.values():
            recompute_budget(self.session, budget)

    def create(self, data: ExpenseIn, *, today: Optional[date] = None) -> ExpenseSummary:
        if data.amount_cents <= 0:
            raise ValidationError(
                ErrorCode.invalid_amount, "Amount must be greater than zero"
            )
        self.categories.get(data.category_id)
        budget_id = self._resolve_budget_id(data.date, today)
        allocation_id = self._allocation_id_for(budget_id, data.category_id)

        with atomic(self.session):
            budgets, allocations = self._lock([budget_id], [allocation_id])
            expense = Expense(
                user_id=self.user_id,
                budget_id=budget_id,
                category_id=data.category_id,
                allocation_id=allocation_id,
                pattern_id=data.pattern_id,
                amount_cents=data.amount_cents,
                description=data.description.strip(),
                date=data.date,
                status=data.status,
                source=data.source,
                merchant=clean_text(data.merchant, max_length=100),
                notes=data.notes,
                raw_data=data.raw_data,
                confidence=data.confidence,
                tags=normalize_keywords(data.tags),
            )
            self.session.add(expense)
            self._recompute(budgets, allocations)

        allocation = allocations[allocation_id]
        logger.info(
            f"expense_created: user_id={self.user_id} expense_id={expense.id} "
            f"allocation_id={allocation_id} amount_cents={expense.amount_cents} "
            f"spent_cents={allocation.spent_cents} over_budget={allocation.is_over_budget}"
        )
        return expense_summary(expense, alert=allocation_alert(allocation))

    def update(self, expense_id: int, data: ExpenseUpdateIn) -> ExpenseSummary:
        expense = self.get(expense_id)
        if not expense.can_be_modified:
            raise ConflictError(
                ErrorCode.expense_not_modifiable, "Expense can no longer be modified"
            )
        if data.amount_cents is not None and data.amount_cents <= 0:
            raise ValidationError(
                ErrorCode.invalid_amount, "Amount must be greater than zero"
            )

        category_id = data.category_id or expense.category_id
        day = data.date or expense.date
        budget_id, allocation_id = expense.budget_id, expense.allocation_id
        moved = category_id != expense.category_id or (day.year, day.month) != (
            expense.date.year,
            expense.date.month,
        )
        if moved:
            self.categories.get(category_id)
            budget_id = self._resolve_budget_id(day, None)
            allocation_id = self._allocation_id_for(budget_id, category_id)

        with atomic(self.session):
            budgets, allocations = self._lock(
                [expense.budget_id, budget_id], [expense.allocation_id, allocation_id]
            )
            expense.budget_id = budget_id
            expense.allocation_id = allocation_id
            expense.category_id = category_id
            expense.date = day
            if data.amount_cents is not None:
                expense.amount_cents = data.amount_cents
            if data.description is not None:
                expense.description = data.description.strip()
            if data.merchant is not None:
                expense.merchant = clean_text(data.merchant, max_length=100)
            if data.notes is not None:
                expense.notes = data.notes
            if data.tags is not None:
                expense.tags = normalize_keywords(data.tags)
            self._recompute(budgets, allocations)

        self.session.refresh(expense)
        return expense_summary(expense, alert=allocation_alert(allocations[allocation_id]))

    def _set_status(self, expense: Expense, status: ExpenseStatus) -> ExpenseSummary:
        with atomic(self.session):
            budgets, allocations = self._lock(
                [expense.budget_id], [expense.allocation_id]
            )
            expense.status = status
            self._recompute(budgets, allocations)
        logger.info(
            f"expense_status: user_id={self.user_id} expense_id={expense.id} "
            f"status={status.value}"
        )
        return expense_summary(expense)

    def cancel(self, expense_id: int) -> ExpenseSummary:
        expense = self.get(expense_id)
        if expense.status == ExpenseStatus.cancelled:
            raise ConflictError(
                ErrorCode.expense_not_modifiable, "Expense is already cancelled"
            )
        return self._set_status(expense, ExpenseStatus.cancelled)

    def confirm(self, expense_id: int) -> ExpenseSummary:
        expense = self.get(expense_id)
        if expense.status != ExpenseStatus.pending:
            raise ConflictError(
                ErrorCode.expense_not_modifiable, "Only pending expenses can be confirmed"
            )
        return self._set_status(expense, ExpenseStatus.confirmed)

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        if expense.status == ExpenseStatus.cancelled:
            raise ConflictError(
                ErrorCode.expense_not_modifiable, "Cancelled expenses cannot be deleted"
            )
        with atomic(self.session):
            budgets, allocations = self._lock(
                [expense.budget_id], [expense.allocation_id]
            )
            self.session.delete(expense)
            self._recompute(budgets, allocations)
        logger.info(f"expense_deleted: user_id={self.user_id} expense_id={expense_id}")


class NotificationIngestService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.patterns = NotificationPatternService(session, user_id)
        self.expenses = ExpenseService(session, user_id)

    def ingest(
        self, data: NotificationIn, *, today: Optional[date] = None
    ) -> NotificationIngestResult:
        """Classify a bank notification and book it as an expense.

        The expense is confirmed right away when the pattern auto-approves,
        otherwise it waits as pending. Notifications without a usable amount
        are returned unbooked with a ``skipped_reason``.
        """
        account = self.patterns.accounts.get(data.bank_account_id)
        empty = ProcessedNotification(
            bank_account_id=data.bank_account_id,
            channel=data.channel,
            message=data.message,
            processed=False,
        )
        if not account.is_active or not account.is_notification_enabled:
            return NotificationIngestResult(
                notification=empty, skipped_reason="notifications_disabled"
            )

        processed = self.patterns.process_notification(
            data.bank_account_id, data.channel, data.message
        )
        if not processed.processed:
            return NotificationIngestResult(
                notification=processed, skipped_reason="no_pattern"
            )

        fields = processed.extracted_data
        try:
            amount_cents = parse_amount(fields.get("amount", ""))
        except ValueError:
            amount_cents = 0
        if amount_cents <= 0:
            return NotificationIngestResult(
                notification=processed, skipped_reason="amount_not_found"
            )

        today = today or local_today()
        received_on = data.received_on or today
        expense_date = received_on
        if fields.get("date"):
            try:
                expense_date = parse_date(fields["date"], reference=received_on)
            except ValueError:
                logger.warning(
                    f"notification_date_unparsed: pattern_id={processed.pattern_id} "
                    f"value={fields['date']!r}"
                )

        merchant = clean_text(fields.get("merchant"), max_length=100)
        description = (
            clean_text(fields.get("description"), max_length=500)
            or merchant
            or processed.pattern_name
        )
        status = (
            ExpenseStatus.confirmed if processed.auto_approve else ExpenseStatus.pending
        )
        expense = self.expenses.create(
            ExpenseIn(
                category_id=data.category_id,
                amount_cents=amount_cents,
                date=expense_date,
                description=description,
                source=ExpenseSource.notification,
                status=status,
                merchant=merchant,
                raw_data=data.message,
                confidence=processed.confidence,
                pattern_id=processed.pattern_id,
            ),
            today=today,
        )
        return NotificationIngestResult(notification=processed, expense=expense)


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.categories = CategoryService(session, user_id)

    def _find(self, year: int, month: int) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
        )

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            raise NotFoundError(ErrorCode.budget_not_found, "Budget not found")
        if budget.user_id != self.user_id:
            raise PermissionDeniedError("Budget belongs to another user")
        return budget

    def list_budgets(self, active_only: bool = False) -> list[Budget]:
        stmt = select(Budget).where(Budget.user_id == self.user_id)
        if active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        return list(
            self.session.scalars(stmt.order_by(Budget.year.desc(), Budget.month.desc()))
        )

    def create_budget(
        self, data: BudgetIn, *, today: Optional[date] = None
    ) -> BudgetSummary:
        if data.total_cents <= 0:
            raise ValidationError(
                ErrorCode.invalid_amount, "Budget total must be greater than zero"
            )
        category_ids = [item.category_id for item in data.allocations]
        if len(set(category_ids)) != len(category_ids):
            raise ValidationError(
                ErrorCode.duplicate_allocation, "A category can only be allocated once"
            )
        allocated = sum(item.allocated_cents for item in data.allocations)
        if allocated > data.total_cents:
            raise ValidationError(
                ErrorCode.budget_allocations_exceed,
                f"Allocations ({allocated}) exceed the budget total ({data.total_cents})",
            )
        for category_id in category_ids:
            category = self.categories.get(category_id)
            if category.archived_at is not None:
                raise NotFoundError(
                    ErrorCode.category_not_found, f"Category {category.name} is archived"
                )
        if self._find(data.year, data.month) is not None:
            raise ConflictError(
                ErrorCode.budget_exists,
                f"A budget for {data.year}-{data.month:02d} already exists",
            )

        default_threshold = get_settings().default_alert_threshold
        days = remaining_days(data.year, data.month, today)
        now = local_now()
        budget = Budget(
            user_id=self.user_id,
            year=data.year,
            month=data.month,
            total_cents=data.total_cents,
            spent_cents=0,
            remaining_cents=data.total_cents,
            is_active=True,
            auto_create_next=data.auto_create_next,
        )
        with atomic(self.session):
            self.session.add(budget)
            for item in data.allocations:
                allocation = BudgetAllocation(
                    category_id=item.category_id,
                    allocated_cents=item.allocated_cents,
                    spent_cents=0,
                    remaining_cents=item.allocated_cents,
                    daily_limit_cents=0,
                    current_daily_limit_cents=0,
                    alert_threshold=(
                        item.alert_threshold
                        if item.alert_threshold is not None
                        else default_threshold
                    ),
                    is_over_budget=False,
                )
                refresh_daily_limit(allocation, days, now=now)
                budget.allocations.append(allocation)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError(
                    ErrorCode.budget_exists,
                    f"A budget for {data.year}-{data.month:02d} already exists",
                ) from exc

        logger.info(
            f"budget_created: user_id={self.user_id} budget_id={budget.id} "
            f"period={budget.year}-{budget.month:02d} total_cents={budget.total_cents} "
            f"allocations={len(data.allocations)}"
        )
        return budget_summary(budget, today=today)

    def _refresh_daily_limits(self, budget_id: int, today: date) -> Budget:
        budget = _lock_budget(self.session, budget_id)
        days = remaining_days(budget.year, budget.month, today)
        now = local_now()
        for allocation in _lock_budget_allocations(self.session, budget_id):
            refresh_daily_limit(allocation, days, now=now)
        return budget

    def get_current_budget(self, *, today: Optional[date] = None) -> BudgetSummary:
        today = today or local_today()
        budget = self._find(today.year, today.month)
        if budget is None:
            raise NotFoundError(
                ErrorCode.budget_not_found, "No budget for the current month"
            )
        with atomic(self.session):
            budget = self._refresh_daily_limits(budget.id, today)
        return budget_summary(budget, today=today)

    def get_budget_by_month(
        self, year: int, month: int, *, today: Optional[date] = None
    ) -> BudgetSummary:
        budget = self._find(year, month)
        if budget is None:
            raise NotFoundError(
                ErrorCode.budget_not_found, f"No budget for {year}-{month:02d}"
            )
        return budget_summary(budget, today=today)

    def _apply_allocation_update(
        self, allocation: BudgetAllocation, data: AllocationUpdateIn
    ) -> None:
        if data.allocated_cents is not None:
            if data.allocated_cents < allocation.spent_cents:
                raise ConflictError(
                    ErrorCode.allocation_below_spent,
                    f"Allocation cannot be lower than what is already spent "
                    f"({allocation.spent_cents})",
                )
            allocation.allocated_cents = data.allocated_cents
            allocation.remaining_cents = allocation.allocated_cents - allocation.spent_cents
            allocation.is_over_budget = allocation.spent_cents > allocation.allocated_cents
        if data.alert_threshold is not None:
            allocation.alert_threshold = data.alert_threshold

    def _check_allocations_fit(
        self, budget: Budget, allocations: list[BudgetAllocation]
    ) -> None:
        allocated = sum(a.allocated_cents for a in allocations)
        if allocated > budget.total_cents:
            raise ValidationError(
                ErrorCode.budget_allocations_exceed,
                f"Allocations ({allocated}) exceed the budget total ({budget.total_cents})",
            )

    def update_budget(
        self, budget_id: int, data: BudgetUpdateIn, *, today: Optional[date] = None
    ) -> BudgetSummary:
        self.get(budget_id)
        today = today or local_today()
        with atomic(self.session):
            budget = _lock_budget(self.session, budget_id)
            allocations = _lock_budget_allocations(self.session, budget_id)
            by_id = {a.id: a for a in allocations}

            if data.total_cents is not None:
                if data.total_cents <= 0:
                    raise ValidationError(
                        ErrorCode.invalid_amount, "Budget total must be greater than zero"
                    )
                if data.total_cents < budget.spent_cents:
                    raise ConflictError(
                        ErrorCode.invalid_total_amount,
                        "Budget total cannot be lower than what is already spent",
                    )
                budget.total_cents = data.total_cents
            if data.auto_create_next is not None:
                budget.auto_create_next = data.auto_create_next

            days = remaining_days(budget.year, budget.month, today)
            now = local_now()
            for item in data.allocations or []:
                allocation = by_id.get(item.id)
                if allocation is None:
                    raise NotFoundError(
                        ErrorCode.allocation_not_found,
                        f"Allocation {item.id} is not part of this budget",
                    )
                self._apply_allocation_update(allocation, item)
                refresh_daily_limit(allocation, days, now=now)

            self._check_allocations_fit(budget, allocations)
            recompute_budget(self.session, budget)

        logger.info(
            f"budget_updated: user_id={self.user_id} budget_id={budget.id} "
            f"total_cents={budget.total_cents}"
        )
        return budget_summary(budget, today=today)

    def update_allocation(
        self,
        allocation_id: int,
        data: AllocationUpdateIn,
        *,
        today: Optional[date] = None,
    ) -> AllocationSummary:
        allocation = self.session.get(BudgetAllocation, allocation_id)
        if allocation is None:
            raise NotFoundError(ErrorCode.allocation_not_found, "Allocation not found")
        self.get(allocation.budget_id)
        today = today or local_today()

        with atomic(self.session):
            budget = _lock_budget(self.session, allocation.budget_id)
            allocations = _lock_budget_allocations(self.session, budget.id)
            allocation = next(a for a in allocations if a.id == allocation_id)
            self._apply_allocation_update(allocation, data)
            refresh_daily_limit(
                allocation,
                remaining_days(budget.year, budget.month, today),
                now=local_now(),
            )
            self._check_allocations_fit(budget, allocations)
            recompute_budget(self.session, budget)

        return allocation_summary(allocation, budget.total_cents)

    def deactivate(self, budget_id: int) -> BudgetSummary:
        budget = self.get(budget_id)
        with atomic(self.session):
            budget.is_active = False
        return budget_summary(budget)

    def recompute(self, budget_id: int, *, today: Optional[date] = None) -> BudgetSummary:
        """Rebuild every spent amount of the budget from its expenses."""
        self.get(budget_id)
        with atomic(self.session):
            budget = _lock_budget(self.session, budget_id)
            for allocation in _lock_budget_allocations(self.session, budget_id):
                recompute_allocation(self.session, allocation)
            recompute_budget(self.session, budget)
        return budget_summary(budget, today=today)

    def create_next_budget(
        self, budget_id: int, *, today: Optional[date] = None
    ) -> Optional[BudgetSummary]:
        """Copy a budget's total and allocations into the following month.

        Returns ``None`` when the next month already has a budget.
        """
        budget = self.get(budget_id)
        year, month = next_month(budget.year, budget.month)
        if self._find(year, month) is not None:
            return None
        allocations = [
            {
                "category_id": a.category_id,
                "allocated_cents": a.allocated_cents,
                "alert_threshold": a.alert_threshold,
            }
            for a in budget.allocations
            if a.category.archived_at is None
        ]
        return self.create_budget(
            BudgetIn(
                year=year,
                month=month,
                total_cents=budget.total_cents,
                allocations=allocations,
                auto_create_next=budget.auto_create_next,
            ),
            today=today,
        )

    def _confirmed_total(self, start: date, end: date) -> int:
        total = self.session.scalar(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.user_id == self.user_id,
                Expense.status == ExpenseStatus.confirmed,
                Expense.date >= start,
                Expense.date <= end,
            )
        )
        return int(total or 0)

    def dashboard(self, *, today: Optional[date] = None) -> Dashboard:
        today = today or local_today()
        budget = self._find(today.year, today.month)
        if budget is None:
            return Dashboard(
                current_budget=None,
                today_expenses=[],
                today_total_cents=0,
                week_total_cents=0,
                month_total_cents=0,
                alerts=[],
                quick_stats=None,
            )

        with atomic(self.session):
            budget = self._refresh_daily_limits(budget.id, today)
        summary = budget_summary(budget, today=today)

        expenses = ExpenseService(self.session, self.user_id)
        week = resolve_period("week", today=today)
        month = resolve_period("month", today=today)
        alerts = [
            alert
            for alert in (allocation_alert(a) for a in budget.allocations)
            if alert is not None
        ]

        on_track = 0
        over_budget = 0
        for allocation in summary.allocations:
            if allocation.is_over_budget:
                over_budget += 1
            elif allocation.progress_percent <= ON_TRACK_PERCENT:
                on_track += 1
        recommended = 0
        if summary.remaining_days > 0:
            recommended = max(0, summary.remaining_cents // summary.remaining_days)
        quick_stats = QuickStats(
            days_left_in_month=days_in_month(today.year, today.month) - today.day,
            average_daily_spent_cents=summary.spent_cents // today.day,
            recommended_daily_cents=recommended,
            total_categories=len(summary.allocations),
            categories_on_track=on_track,
            categories_over_budget=over_budget,
        )

        return Dashboard(
            current_budget=summary,
            today_expenses=expenses.list_for_period(today, today),
            today_total_cents=self._confirmed_total(today, today),
            week_total_cents=self._confirmed_total(week.start, week.end),
            month_total_cents=self._confirmed_total(month.start, month.end),
            alerts=alerts,
            quick_stats=quick_stats,
        )

    def process_daily_rollover(self, *, today: Optional[date] = None) -> int:
        """Carry yesterday's unspent daily allowance into today.

        Allocations already rolled over today are skipped, so running the
        sweep twice on one day changes nothing. Returns how many allocations
        were rolled.
        """
        today = today or local_today()
        yesterday = today - timedelta(days=1)
        budget = self._find(today.year, today.month)
        if budget is None:
            raise NotFoundError(
                ErrorCode.budget_not_found, "No budget for the current month"
            )

        rolled = 0
        carried = 0
        with atomic(self.session):
            budget = _lock_budget(self.session, budget.id)
            days = remaining_days(budget.year, budget.month, today)
            now = local_now()
            for allocation in _lock_budget_allocations(self.session, budget.id):
                if allocation.last_rollover_on == today:
                    continue
                spent_yesterday = self.session.scalar(
                    select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                        Expense.user_id == self.user_id,
                        Expense.category_id == allocation.category_id,
                        Expense.status == ExpenseStatus.confirmed,
                        Expense.date == yesterday,
                    )
                )
                # yesterday belongs to the previous budget on the first of the month
                if yesterday.month == today.month:
                    carried += apply_rollover(allocation, int(spent_yesterday or 0))
                refresh_daily_limit(allocation, days, now=now)
                allocation.last_rollover_on = today
                rolled += 1

        logger.info(
            f"daily_rollover: user_id={self.user_id} budget_id={budget.id} "
            f"date={today.isoformat()} allocations={rolled} carried_cents={carried}"
        )
        return rolled


def run_daily_rollover(session: Session, *, today: Optional[date] = None) -> int:
    """Roll over every user that has a budget for the current month.

    Each user is committed separately; a failure for one user is logged and
    does not stop the sweep.
    """
    today = today or local_today()
    user_ids = session.scalars(
        select(Budget.user_id)
        .where(Budget.year == today.year, Budget.month == today.month)
        .distinct()
    ).all()
    rolled = 0
    for user_id in user_ids:
        try:
            rolled += BudgetService(session, user_id).process_daily_rollover(today=today)
        except (NotFoundError, ConflictError) as exc:
            logger.warning(
                f"daily_rollover_failed: user_id={user_id} code={exc.code.value}"
            )
    return rolled


def run_auto_create_budgets(session: Session, *, today: Optional[date] = None) -> int:
    """Create this month's budget from last month's for users who opted in."""
    today = today or local_today()
    previous = today.replace(day=1) - timedelta(days=1)
    budgets = session.scalars(
        select(Budget).where(
            Budget.year == previous.year,
            Budget.month == previous.month,
            Budget.is_active.is_(True),
            Budget.auto_create_next.is_(True),
        )
    ).all()
    created = 0
    for budget in budgets:
        try:
            summary = BudgetService(session, budget.user_id).create_next_budget(
                budget.id, today=today
            )
        except (ValidationError, ConflictError) as exc:
            logger.warning(
                f"budget_auto_create_failed: user_id={budget.user_id} "
                f"budget_id={budget.id} code={exc.code.value}"
            )
            continue
        if summary is not None:
            created += 1
    return created
