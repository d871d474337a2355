from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    invalid_amount = "invalid_amount"
    invalid_regex = "invalid_regex"
    budget_allocations_exceed = "budget_allocations_exceed"
    duplicate_allocation = "duplicate_allocation"

    budget_not_found = "budget_not_found"
    allocation_not_found = "allocation_not_found"
    category_not_found = "category_not_found"
    category_not_allocated = "category_not_allocated"
    expense_not_found = "expense_not_found"
    pattern_not_found = "pattern_not_found"
    bank_account_not_found = "bank_account_not_found"

    budget_exists = "budget_exists"
    category_exists = "category_exists"
    allocation_below_spent = "allocation_below_spent"
    invalid_total_amount = "invalid_total_amount"
    default_pattern_exists = "default_pattern_exists"
    invalid_status_transition = "invalid_status_transition"
    expense_not_modifiable = "expense_not_modifiable"
    concurrent_update = "concurrent_update"

    permission_denied = "permission_denied"


class EngineError(Exception):
    """Base class for every error the budget engine raises on purpose.

    ``code`` is stable and meant for callers mapping errors to statuses;
    ``message`` is human readable and may change.
    """

    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        self.code = code
        self.message = message or code.value.replace("_", " ")
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ValidationError(EngineError, ValueError):
    pass


class NotFoundError(EngineError, ValueError):
    pass


class ConflictError(EngineError, ValueError):
    pass


class PermissionDeniedError(EngineError, PermissionError):
    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorCode.permission_denied, message)
