import datetime as dt
from datetime import date
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from alerts import AllocationAlert
from models import ExpenseSource, ExpenseStatus, NotificationChannel, PatternStatus


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class BankAccountIn(BaseModel):
    bank_name: str = Field(..., min_length=1, max_length=100)
    account_alias: str = Field(..., min_length=1, max_length=100)
    account_number_mask: str = Field(..., min_length=4, max_length=20)
    is_notification_enabled: bool = True


class AllocationIn(BaseModel):
    category_id: int
    allocated_cents: int = Field(..., ge=0)
    alert_threshold: Optional[float] = Field(default=None, ge=0, le=1)


class BudgetIn(BaseModel):
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    total_cents: int
    allocations: list[AllocationIn] = Field(default_factory=list)
    auto_create_next: bool = True


class AllocationUpdateIn(BaseModel):
    allocated_cents: Optional[int] = Field(default=None, ge=0)
    alert_threshold: Optional[float] = Field(default=None, ge=0, le=1)


class BudgetAllocationUpdateIn(AllocationUpdateIn):
    id: int


class BudgetUpdateIn(BaseModel):
    total_cents: Optional[int] = None
    auto_create_next: Optional[bool] = None
    allocations: Optional[list[BudgetAllocationUpdateIn]] = None


class ExpenseIn(BaseModel):
    category_id: int
    # positivity is checked by the ledger so it can fail with invalid_amount
    amount_cents: int
    date: date
    description: str = Field(..., min_length=1, max_length=500)
    source: ExpenseSource = ExpenseSource.manual
    status: Literal[ExpenseStatus.pending, ExpenseStatus.confirmed] = (
        ExpenseStatus.confirmed
    )
    merchant: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: list[str] = Field(default_factory=list)
    raw_data: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    pattern_id: Optional[int] = None


class ExpenseUpdateIn(BaseModel):
    category_id: Optional[int] = None
    amount_cents: Optional[int] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[list[str]] = None


class NotificationPatternIn(BaseModel):
    bank_account_id: int
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    channel: NotificationChannel
    message_pattern: Optional[str] = Field(default=None, max_length=2000)
    example_message: Optional[str] = Field(default=None, max_length=2000)
    keywords_trigger: list[str] = Field(default_factory=list)
    keywords_exclude: list[str] = Field(default_factory=list)
    amount_regex: Optional[str] = Field(default=None, max_length=500)
    date_regex: Optional[str] = Field(default=None, max_length=500)
    description_regex: Optional[str] = Field(default=None, max_length=500)
    merchant_regex: Optional[str] = Field(default=None, max_length=500)
    requires_validation: bool = True
    confidence_threshold: float = Field(default=0.8, ge=0, le=1)
    auto_approve: bool = False
    priority: int = Field(default=100, ge=0, le=10_000)
    is_default: bool = False
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class NotificationPatternUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    message_pattern: Optional[str] = Field(default=None, max_length=2000)
    example_message: Optional[str] = Field(default=None, max_length=2000)
    keywords_trigger: Optional[list[str]] = None
    keywords_exclude: Optional[list[str]] = None
    amount_regex: Optional[str] = Field(default=None, max_length=500)
    date_regex: Optional[str] = Field(default=None, max_length=500)
    description_regex: Optional[str] = Field(default=None, max_length=500)
    merchant_regex: Optional[str] = Field(default=None, max_length=500)
    requires_validation: Optional[bool] = None
    confidence_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    auto_approve: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=0, le=10_000)
    is_default: Optional[bool] = None
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None


class NotificationIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bank_account_id: int
    channel: NotificationChannel
    message: str = Field(..., max_length=2000)
    category_id: int
    received_on: Optional[dt.date] = None


class ProcessedNotification(BaseModel):
    bank_account_id: int
    channel: NotificationChannel
    message: str
    processed: bool
    pattern_id: Optional[int] = None
    pattern_name: Optional[str] = None
    confidence: float = 0.0
    auto_approve: bool = False
    requires_validation: bool = True
    extracted_data: dict[str, str] = Field(default_factory=dict)


class PatternStatistics(BaseModel):
    total_patterns: int
    active_patterns: int
    inactive_patterns: int
    learning_patterns: int
    total_matches: int
    total_successes: int
    overall_success_rate: float
    patterns_without_extractors: list[int]


class AllocationSummary(BaseModel):
    id: int
    category_id: int
    category_name: str
    allocated_cents: int
    spent_cents: int
    remaining_cents: int
    progress_percent: float
    daily_limit_cents: int
    current_daily_limit_cents: int
    alert_threshold: float
    is_over_budget: bool
    should_alert: bool
    allocation_percent: float


class BudgetSummary(BaseModel):
    id: int
    year: int
    month: int
    total_cents: int
    spent_cents: int
    remaining_cents: int
    progress_percent: float
    remaining_days: int
    is_active: bool
    is_current_month: bool
    auto_create_next: bool
    allocations: list[AllocationSummary]


class ExpenseSummary(BaseModel):
    id: int
    budget_id: int
    allocation_id: int
    category_id: int
    category_name: str
    amount_cents: int
    description: str
    date: date
    status: ExpenseStatus
    source: ExpenseSource
    merchant: Optional[str]
    tags: list[str]
    confidence: Optional[float]
    pattern_id: Optional[int]
    can_be_modified: bool
    alert: Optional[AllocationAlert] = None


class PatternSummary(BaseModel):
    id: int
    bank_account_id: int
    name: str
    channel: NotificationChannel
    status: PatternStatus
    priority: int
    is_default: bool
    match_count: int
    success_count: int
    success_rate: float


class QuickStats(BaseModel):
    days_left_in_month: int
    average_daily_spent_cents: int
    recommended_daily_cents: int
    total_categories: int
    categories_on_track: int
    categories_over_budget: int


class Dashboard(BaseModel):
    current_budget: Optional[BudgetSummary]
    today_expenses: list[ExpenseSummary]
    today_total_cents: int
    week_total_cents: int
    month_total_cents: int
    alerts: list[AllocationAlert]
    quick_stats: Optional[QuickStats]


class NotificationIngestResult(BaseModel):
    notification: ProcessedNotification
    expense: Optional[ExpenseSummary] = None
    skipped_reason: Optional[str] = None


class CategoryTotal(BaseModel):
    category_id: int
    category_name: str
    total_cents: int
    count: int


class CategoryTotals(BaseModel):
    period: str
    start: date
    end: date
    year: int
    month: int
    categories: list[CategoryTotal]
    total_spent_cents: int
