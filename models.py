from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class NotificationChannel(str, Enum):
    sms = "sms"
    push = "push"
    email = "email"
    app = "app"


class PatternStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    learning = "learning"


class ExpenseStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    cancelled = "cancelled"


class ExpenseSource(str, Enum):
    manual = "manual"
    sms = "sms"
    whatsapp = "whatsapp"
    bank_api = "bank_api"
    notification = "notification"


# statuses that count towards spent amounts
COUNTED_EXPENSE_STATUSES = (ExpenseStatus.pending, ExpenseStatus.confirmed)
AUTOMATIC_EXPENSE_SOURCES = (
    ExpenseSource.sms,
    ExpenseSource.bank_api,
    ExpenseSource.notification,
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL marks a system category shared by every user
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    def usable_by(self, user_id: int) -> bool:
        return self.user_id is None or self.user_id == user_id


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_alias: Mapped[str] = mapped_column(String(100), nullable=False)
    account_number_mask: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_notification_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )

    patterns: Mapped[list["NotificationPattern"]] = relationship(
        "NotificationPattern", back_populates="bank_account"
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_create_next: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    allocations: Mapped[list["BudgetAllocation"]] = relationship(
        "BudgetAllocation",
        back_populates="budget",
        order_by="BudgetAllocation.id",
    )

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_budget_user_month"),
        CheckConstraint("total_cents > 0", name="ck_budget_total_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        Index("ix_budget_user_active", "user_id", "is_active"),
    )


class BudgetAllocation(Base, TimestampMixin):
    __tablename__ = "budget_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_limit_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_daily_limit_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    last_calculated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_rollover_on: Mapped[Optional[date]] = mapped_column(Date)
    alert_threshold: Mapped[float] = mapped_column(Float, default=0.8, nullable=False)
    is_over_budget: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="allocations")
    category: Mapped["Category"] = relationship("Category")

    __mapper_args__ = {"version_id_col": version_id}
    __table_args__ = (
        UniqueConstraint("budget_id", "category_id", name="uq_allocation_category"),
        CheckConstraint("allocated_cents >= 0", name="ck_allocation_amount_positive"),
        CheckConstraint(
            "alert_threshold >= 0 AND alert_threshold <= 1",
            name="ck_allocation_alert_threshold_range",
        ),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    allocation_id: Mapped[int] = mapped_column(
        ForeignKey("budget_allocations.id"), nullable=False
    )
    pattern_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("notification_patterns.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ExpenseStatus] = mapped_column(
        SAEnum(ExpenseStatus), default=ExpenseStatus.confirmed, nullable=False
    )
    source: Mapped[ExpenseSource] = mapped_column(
        SAEnum(ExpenseSource), default=ExpenseSource.manual, nullable=False
    )
    merchant: Mapped[Optional[str]] = mapped_column(String(100))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    raw_data: Mapped[Optional[str]] = mapped_column(Text)
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    category: Mapped["Category"] = relationship("Category")
    allocation: Mapped["BudgetAllocation"] = relationship("BudgetAllocation")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
        Index("ix_expenses_allocation_status", "allocation_id", "status"),
        Index("ix_expenses_user_category_date", "user_id", "category_id", "date"),
        Index("ix_expenses_user_date", "user_id", "date"),
    )

    @property
    def is_automatic(self) -> bool:
        return self.source in AUTOMATIC_EXPENSE_SOURCES

    @property
    def can_be_modified(self) -> bool:
        if self.status == ExpenseStatus.cancelled:
            return False
        return not (self.is_automatic and self.status == ExpenseStatus.confirmed)


class NotificationPattern(Base, TimestampMixin):
    __tablename__ = "notification_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    bank_account_id: Mapped[int] = mapped_column(
        ForeignKey("bank_accounts.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    channel: Mapped[NotificationChannel] = mapped_column(
        SAEnum(NotificationChannel), nullable=False
    )
    status: Mapped[PatternStatus] = mapped_column(
        SAEnum(PatternStatus), default=PatternStatus.active, nullable=False
    )

    message_pattern: Mapped[Optional[str]] = mapped_column(Text)
    example_message: Mapped[Optional[str]] = mapped_column(Text)
    keywords_trigger: Mapped[list[str]] = mapped_column(
        JSON, default=list, nullable=False
    )
    keywords_exclude: Mapped[list[str]] = mapped_column(
        JSON, default=list, nullable=False
    )

    amount_regex: Mapped[Optional[str]] = mapped_column(String(500))
    date_regex: Mapped[Optional[str]] = mapped_column(String(500))
    description_regex: Mapped[Optional[str]] = mapped_column(String(500))
    merchant_regex: Mapped[Optional[str]] = mapped_column(String(500))

    requires_validation: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    confidence_threshold: Mapped[float] = mapped_column(
        Float, default=0.8, nullable=False
    )
    auto_approve: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    match_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, default=dict, nullable=False
    )

    bank_account: Mapped["BankAccount"] = relationship(
        "BankAccount", back_populates="patterns"
    )

    __table_args__ = (
        Index(
            "ix_patterns_account_channel_status_priority",
            "bank_account_id",
            "channel",
            "status",
            "priority",
        ),
        Index(
            "uq_pattern_default_per_channel",
            "bank_account_id",
            "channel",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
        CheckConstraint(
            "confidence_threshold >= 0 AND confidence_threshold <= 1",
            name="ck_pattern_confidence_threshold_range",
        ),
    )

    @property
    def success_rate(self) -> float:
        if not self.match_count:
            return 0.0
        return self.success_count / self.match_count * 100

    @property
    def display_name(self) -> str:
        return self.name or f"{self.channel.value} pattern"
